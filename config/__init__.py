"""
Configuration package: env constants, logging, sentry.
"""
