"""MX synthesis keys and RRSIG signing."""
