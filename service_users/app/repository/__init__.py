"""
Repository package for Users Service.
"""
