from config.settings import CLEANUP_POLICIES, Config, load_config, validate_config

__all__ = ["CLEANUP_POLICIES", "Config", "load_config", "validate_config"]
