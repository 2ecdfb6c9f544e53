"""Domain layer — entities, reference declarations, schemas, errors.

This layer depends only on stdlib and pydantic.
It must never import from services, infrastructure, commands, or config.
"""
