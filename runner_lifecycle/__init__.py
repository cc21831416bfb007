"""Self-hosted CI runner lifecycle manager."""

from runner_lifecycle.config import RunnerSettings, get_runner_settings, load_worker_config
from runner_lifecycle.main import LifecycleManager, run_manager

__all__ = ["LifecycleManager", "RunnerSettings", "get_runner_settings", "load_worker_config", "run_manager"]
