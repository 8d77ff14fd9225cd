"""GroupSync: acoustic latency calibration for Sendspin speaker groups."""
