"""
Infrastructure Layer - Persistence and collaborator adapters.
"""
