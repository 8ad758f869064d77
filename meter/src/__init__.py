"""
Load-output energy meter daemon.

Integrates current x voltage samples into daily and lifetime kWh totals,
smooths the live watt reading for display, and checkpoints its state to a
local SQLite register store on a write-minimizing cadence (SD-card friendly).

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
