"""Edge gateway: a reverse proxy that fans one entry point out to several upstream APIs."""
