"""
IoT oracle package for tamper-evident solar/wind telemetry records.

Normalizes and hashes site readings, rolls them up into hourly summaries and
daily digests with a Merkle root, converts produced energy into avoided
emissions, and anchors each daily root with an external anchoring service.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""
