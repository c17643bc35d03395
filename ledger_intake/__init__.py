"""
Ledger Intake - Source Package

Turns informally reported financial events (chat text, receipt photos,
bank statement rows) into a reviewed, balance-consistent ledger.

DESIGN PRINCIPLES:
1. AI suggests → Human confirms → System commits
2. Fail early, fail visibly
3. No silent corrections
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Ledger Intake Team"
