"""Pydantic schemas for manifests and API payloads."""
