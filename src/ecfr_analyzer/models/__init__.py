"""
Configuration models, persisted record models and the exception hierarchy.
"""
