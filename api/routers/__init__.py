"""
Routers per API xlsx-ingest.

Moduli:
- ingest: avvio ingestione sessione/oggetto e polling progresso (/api/ingest/*)
"""
from . import ingest

__all__ = ["ingest"]
