"""
TeamLedger - Source Package

A shared finance ledger for small teams: members record income and
expenses, and changes to someone else's entry go through a confirmation
step before they apply.

DESIGN PRINCIPLES:
1. Member proposes -> Owner/Admin confirms -> Store applies
2. One authorization gate for every role-gated mutation
3. State transitions are atomic in the store, never in process memory
4. Every step is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "TeamLedger Team"
