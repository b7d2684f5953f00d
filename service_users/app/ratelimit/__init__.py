"""
Rate limiting package for Users Service.
"""
