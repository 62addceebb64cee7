"""Plugin update server: release catalog, webhook ingestion and update checks."""
