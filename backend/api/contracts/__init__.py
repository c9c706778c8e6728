"""
Contract package.

Param models live in api.contracts.pydantic_models; routes validate every
request through them before calling the reader.
"""
