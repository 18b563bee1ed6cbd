"""
Core functionality per xlsx-ingest.

Questo modulo contiene:
- Configurazione (config.py)
- Database MongoDB (database.py)
- Object storage S3 (storage.py)
- Progress tracker Redis (progress.py)
- Logging (logger.py)
- Eccezioni (errors.py)
"""
