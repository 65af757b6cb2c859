from commitbet.services import (
    evidence_service,
    ledger_service,
    user_service,
)


__all__ = [
    "evidence_service",
    "ledger_service",
    "user_service",
]
