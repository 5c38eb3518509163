"""Infrastructure Layer: persistence backends and cross-cutting concerns.

Invariants:
    - Backends are dumb durable blob stores; all validation lives in core/ and services/
    - Driver exceptions are mapped to RuleEngineError kinds at this boundary
"""
