"""Source ingestion: gog CLI gateway client and per-account synchronization."""
