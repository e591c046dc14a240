"""
Configuration loading and validation.
"""
