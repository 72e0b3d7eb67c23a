"""Health monitoring and auto-remediation for PM2-managed processes."""
