"""
Core - enums и исключения pipeline.
"""
