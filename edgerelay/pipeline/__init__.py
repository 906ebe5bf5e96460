"""Durable delivery pipeline: ingest, promote, deliver, resolve, sweep, report."""
