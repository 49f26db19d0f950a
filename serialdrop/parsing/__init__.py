"""Parsing helpers for source listings, chapter pages and URLs."""
