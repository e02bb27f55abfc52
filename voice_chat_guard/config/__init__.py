"""
Configuration for Voice Chat Guard.

Loads immutable application settings from YAML files or the environment.
"""
