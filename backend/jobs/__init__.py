"""
Background jobs for the crypto advisory ML signal pipeline.

Jobs:
- ml_signal_cycle: Run one or more pipeline stages (refresh, train, infer, resolve) once
- ml_scheduler: Long-running scheduler that triggers each stage on its own interval
"""
