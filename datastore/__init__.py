"""
Data access layer for the campus marketplace.

This package provides one async CRUD + query + subscribe surface over two
backends: Cloud Firestore for the shared remote copy and a local SQLite
store that mirrors it and takes over when the remote is disabled or out
of quota.
"""
