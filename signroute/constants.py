"""Shared constants for signroute."""

# Actor recorded on history rows nobody has signed yet.
NO_SIGNER = "00000000-0000-0000-0000-000000000000"

EVENTS_TOPIC = "signroute.events"

DEFAULT_CONFIG_PATH = "config.yaml"
