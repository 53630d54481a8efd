"""
Edge daemon package for the multi-circuit energy meter pipeline.

Reads the meter's Server-Sent-Events stream, derives grid, phase and
appliance-health metrics per channel, and forwards rate-limited attribute
events to the downstream hub over HTTPS.

CHANGELOG:
- 2026-10-12: Initial creation (STORY-001)

TODO:
- None
"""
