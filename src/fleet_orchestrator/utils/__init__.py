"""Shared low-level helpers: durable file writes, hashing and thread concurrency."""
