"""Prometheus counters for session events (exposed at /metrics)."""

from prometheus_client import Counter

SIGN_INS = Counter(
    "auth_sign_ins_total",
    "Successful third-party sign-ins",
    ["provider", "new_user"],
)
REFRESHES = Counter(
    "auth_refreshes_total",
    "Refresh attempts by outcome",
    ["outcome"],
)
TOKEN_REUSE = Counter(
    "auth_token_reuse_total",
    "Refresh tokens presented after they were already consumed",
)
SWEEP_REMOVED = Counter(
    "auth_sweep_removed_total",
    "Records removed by the expiry sweep",
    ["kind"],
)
