"""Internal constants shared across the library."""

#: Standard wait window after arrival (seconds).
RED_WINDOW_SECONDS = 300
#: Extended wait window, granted only when a rider asked for it (seconds).
EXTENDED_WINDOW_SECONDS = 420

#: Live view countdown cadence (seconds).
TICK_INTERVAL_SECONDS = 1.0

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
