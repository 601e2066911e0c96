"""Configuration for speechgate components."""
