"""Event relay and session state synchronizer for a single upstream agent process."""

__version__ = "0.1.0"
