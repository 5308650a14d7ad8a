"""Streaming ingestion: exchange protocol strategy, stream events, multiplexer."""
