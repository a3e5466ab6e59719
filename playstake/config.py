"""
playstake.config — YAML Configuration Loader
==============================================

**Why this file exists:**
This module reads ``config.yaml`` for the business tuning of the challenge
engine (fee rates, bet bounds, timeouts, rate limits).  Secrets and
infrastructure (``DATABASE_URL``, ``JWT_SECRET``,
``CHALLENGE_ENCRYPTION_KEY``) come from the environment instead.

Usage::

    from playstake.config import load_config

    cfg = load_config()               # reads ./config.yaml by default
    print(cfg.service_charge_rate)    # 0.2
    print(cfg.challenge_ttl)          # 1 day, 0:00:00
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

# operation → (max requests, window seconds)
DEFAULT_RATE_LIMITS: dict[str, tuple[int, int]] = {
    "create": (5, 300),
    "accept": (10, 300),
    "reject": (10, 300),
    "cancel": (10, 300),
    "score": (20, 300),
    "general": (50, 300),
}


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class WagerConfig:
    """Immutable business configuration for the wagering engine.

    Rates are fractions (``0.2`` == 20%).  Amounts are integer minor units.

    ``reject_fee_rate``/``expire_fee_rate`` and ``cancel_fee_rate`` are
    independent settings.  Cancellation defaults to the completion service
    charge; rejection and expiry default to a much smaller fee.
    """

    # Fees
    service_charge_rate: float = 0.20
    reject_fee_rate: float = 0.04
    expire_fee_rate: float = 0.04
    cancel_fee_rate: float = 0.20

    # Bet bounds
    min_bet_amount: int = 20
    max_bet_amount: int = 10_000

    # Timeouts
    challenge_ttl_hours: int = 24
    stuck_threshold_days: int = 7

    # Scores
    max_score: float = 999_999
    game_max_scores: dict[str, float] = field(default_factory=dict)

    # Game sessions (score submission tokens)
    require_game_session: bool = False
    game_session_ttl_minutes: int = 30
    min_play_seconds: int = 10

    # Crypto
    kdf_iterations: int = 100_000

    # Scheduler
    sweep_interval_minutes: int = 60
    scheduler_enabled: bool = True

    # Anti-abuse
    rate_limits: dict[str, tuple[int, int]] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )

    @property
    def challenge_ttl(self) -> timedelta:
        return timedelta(hours=self.challenge_ttl_hours)

    @property
    def stuck_threshold(self) -> timedelta:
        return timedelta(days=self.stuck_threshold_days)

    @property
    def game_session_ttl(self) -> timedelta:
        return timedelta(minutes=self.game_session_ttl_minutes)

    @property
    def min_play_time(self) -> timedelta:
        return timedelta(seconds=self.min_play_seconds)

    def max_score_for(self, game_ref: str) -> float:
        """Per-game score cap, falling back to the global ``max_score``."""
        return self.game_max_scores.get(game_ref, self.max_score)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> WagerConfig:
    """Read *path* and return a :class:`WagerConfig` instance.

    Keys absent from the file keep their defaults.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a rate or amount is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = WagerConfig()
    limits = dict(DEFAULT_RATE_LIMITS)
    for op, spec in (raw.get("rate_limits") or {}).items():
        limits[op] = (int(spec["max_requests"]), int(spec["window_seconds"]))

    cfg = WagerConfig(
        service_charge_rate=float(raw.get("service_charge_rate", defaults.service_charge_rate)),
        reject_fee_rate=float(raw.get("reject_fee_rate", defaults.reject_fee_rate)),
        expire_fee_rate=float(raw.get("expire_fee_rate", defaults.expire_fee_rate)),
        cancel_fee_rate=float(raw.get("cancel_fee_rate", defaults.cancel_fee_rate)),
        min_bet_amount=int(raw.get("min_bet_amount", defaults.min_bet_amount)),
        max_bet_amount=int(raw.get("max_bet_amount", defaults.max_bet_amount)),
        challenge_ttl_hours=int(raw.get("challenge_ttl_hours", defaults.challenge_ttl_hours)),
        stuck_threshold_days=int(raw.get("stuck_threshold_days", defaults.stuck_threshold_days)),
        max_score=float(raw.get("max_score", defaults.max_score)),
        game_max_scores={
            str(k): float(v) for k, v in (raw.get("game_max_scores") or {}).items()
        },
        require_game_session=bool(
            raw.get("require_game_session", defaults.require_game_session)
        ),
        game_session_ttl_minutes=int(
            raw.get("game_session_ttl_minutes", defaults.game_session_ttl_minutes)
        ),
        min_play_seconds=int(raw.get("min_play_seconds", defaults.min_play_seconds)),
        kdf_iterations=int(raw.get("kdf_iterations", defaults.kdf_iterations)),
        sweep_interval_minutes=int(
            raw.get("sweep_interval_minutes", defaults.sweep_interval_minutes)
        ),
        scheduler_enabled=bool(raw.get("scheduler_enabled", defaults.scheduler_enabled)),
        rate_limits=limits,
    )
    _check(cfg)
    return cfg


def _check(cfg: WagerConfig) -> None:
    for name in ("service_charge_rate", "reject_fee_rate", "expire_fee_rate", "cancel_fee_rate"):
        rate = getattr(cfg, name)
        if not 0 <= rate < 1:
            raise ValueError(f"{name} must be in [0, 1), got {rate}")
    if cfg.min_bet_amount <= 0 or cfg.max_bet_amount < cfg.min_bet_amount:
        raise ValueError(
            f"Invalid bet bounds: min={cfg.min_bet_amount} max={cfg.max_bet_amount}"
        )
    if cfg.game_session_ttl_minutes <= 0 or cfg.min_play_seconds < 0:
        raise ValueError(
            f"Invalid game session timing: ttl={cfg.game_session_ttl_minutes}m "
            f"min_play={cfg.min_play_seconds}s"
        )
