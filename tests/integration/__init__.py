"""Integration tests that drive the CLI and real ``/bin/sh`` builds."""
