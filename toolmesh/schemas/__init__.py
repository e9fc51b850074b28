"""Schemas for toolmesh.

- ``schemas.base``: the shared Pydantic base models (camelCase aliases).
- ``schemas.config``: remote server configuration and its document loaders.
- ``schemas.definitions``: the wire-level capability definition DTOs.

Import from the modules directly; ``capabilities.base`` builds on
``schemas.base`` while ``schemas.definitions`` builds on ``capabilities.base``,
so this package re-exports nothing.
"""
