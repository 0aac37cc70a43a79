"""Energy leaderboard service: ledger epoch decoding, per-zone buffering, rolling scores and a WSGI API."""

__version__ = "0.1.0"