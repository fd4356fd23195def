from tasks.recovery import recovery_loop, run_recovery_cycle

__all__ = ["recovery_loop", "run_recovery_cycle"]
