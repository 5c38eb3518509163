"""Services Layer: async orchestration around the pure core.

Invariants:
    - RuleStore is the only service that touches the persistence backend
    - Every service is an explicitly constructed instance, no module-level singletons

Design Decisions:
    - One file per component for locality; RuleEngine wires them together
"""
