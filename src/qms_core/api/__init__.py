"""FastAPI integration helpers for hosts embedding qms_core."""
