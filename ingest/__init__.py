"""
Ingest pipeline a chunk per file tabellari di grandi dimensioni.

- Gate: formato file (xlsx/csv/tsv)
- Prober: righe dati esatte o stimate senza scaricare il file
- Planner: intervalli di righe per chunk
- Pipeline/Orchestrator: un job per file, dispatch dei chunk
- Worker: lettura streaming di un intervallo e bulk insert
"""
