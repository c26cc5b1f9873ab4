from .logging_config import setup_logging, cleanup_old_logs

__all__ = ["setup_logging", "cleanup_old_logs"]
