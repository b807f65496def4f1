"""Job lifecycle, checkpoints, resume, and read-side insights."""
