"""Tasks module: lifecycle, recurring generation, judgment, expiration and ledger repair.

Provides:
- Task creation, listing, submission, cancellation and archiving (service)
- The transition table and atomic settlement (state_machine)
- Idempotent expansion of recurring templates (recurrence_generator)
- Friend judgment of submitted evidence (judgment)
- Opportunistic expiration of overdue tasks (expiration)
- Ledger reconciliation (maintenance)
"""
