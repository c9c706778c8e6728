"""
ETL Services Package

Provides run infrastructure for the GIB registered user sync:
- RunContext: Unified context for sync runs
- Fingerprinting: File hashing and content fingerprints for change detection
"""

from .run_context import RunContext, create_run_context
from .fingerprint import compute_file_sha256, compute_alias_signature, compute_content_fingerprint

__all__ = [
    'RunContext',
    'create_run_context',
    'compute_file_sha256',
    'compute_alias_signature',
    'compute_content_fingerprint',
]
