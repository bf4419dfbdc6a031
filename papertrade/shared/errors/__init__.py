"""
Shared error handling package.

Centralizes error-to-HTTP mapping so that market errors are consistently
translated into API responses.
"""
