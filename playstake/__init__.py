"""
PlayStake — Peer-to-Peer Challenge Wagering Backend
=====================================================
Lets community members stake wallet funds on head-to-head game results.
Stakes sit in escrow while a challenge is open, challenge records are
encrypted at rest, and a background sweep expires stale challenges.

Package layout::

    playstake/
    ├── config.py          # YAML → typed business config
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # documents + rate_limit_events tables
    │   └── store.py       # Path-addressed document store with compare-and-update
    ├── engine/
    │   ├── errors.py      # Error taxonomy (kind + HTTP status)
    │   ├── crypto.py      # PBKDF2 + AES-GCM envelope codec
    │   ├── wallet.py      # Wallet snapshot + ledger operations
    │   ├── challenge.py   # Pure challenge state machine + fee math
    │   └── validation.py  # Structural request checks
    ├── services/
    │   ├── ledger.py            # Atomic escrow ledger
    │   ├── challenge_index.py   # Per-user challenge pointers
    │   ├── challenge_service.py # Transition orchestration
    │   ├── expiration_service.py # Periodic expiry sweep + scheduler
    │   └── notifications.py     # Best-effort lifecycle notifications
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT identity + dependency wiring
        ├── rate_limit.py  # Per-operation sliding-window limits
        └── routes/        # challenges, wallet, admin
"""

__version__ = "0.1.0"
