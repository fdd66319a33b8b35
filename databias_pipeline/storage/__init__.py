"""Relational persistence for analyses, sources, audit activity and queued jobs."""
