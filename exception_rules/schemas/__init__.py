"""Pydantic Schemas: validated shapes for rules, usage records and their inputs.

Invariants:
    - Schemas validate at the system boundary (caller input, stored rows)
    - Domain types from core/ used for enum fields

Design Decisions:
    - Separate from models/: schemas are entity contracts, models are persistence
"""
