"""Adapters layer for proclog.

Adapters implement the Port interfaces defined in the domain layer: PDF text
extraction, record storage and document retention.
"""
