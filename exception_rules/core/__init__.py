"""Core Layer: pure domain logic, no IO, no async, no DB.

Invariants:
    - No module in core/ imports from services/, infrastructure/, models/ or db/
    - Functions are deterministic given their inputs (clock and id factories are injectable)

Design Decisions:
    - Functional core separated from imperative shell: services/ orchestrate the
      async calls around the pure logic defined here
"""
