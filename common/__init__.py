"""
Shared pieces used by every subsystem: value types, the error taxonomy,
sphere math, JSON logging and small helpers.
"""
