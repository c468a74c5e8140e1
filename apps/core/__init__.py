"""
Core app for the capture service.

Shared base model, error handling, request-id logging, SSRF guard,
throttles, metrics and health checks.
"""
