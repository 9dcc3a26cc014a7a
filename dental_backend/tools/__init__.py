"""One-off maintenance scripts (run with ``python -m dental_backend.tools.<name>``)."""
