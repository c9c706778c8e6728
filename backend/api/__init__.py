"""
API package - request contract layer for the registry read API.

This package provides:
- Pydantic param models for the /api/v1 endpoints (api.contracts.pydantic_models)
- Global middleware (request_id, error_envelope)
"""
