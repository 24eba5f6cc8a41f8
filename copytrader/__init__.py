"""
Copy-trading replication engine for Pacifica perpetuals.

Mirrors master account fills into subscribed copier accounts with:
- Per-copier sizing (multiplier, fixed USD, balance percent)
- Risk clamps (position cap, leverage, total exposure)
- Signed, rate-limited order execution
"""

__version__ = "1.0.0"
