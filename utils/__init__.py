"""
Shared helpers: error types and API error responses
"""
