from .settings import RuleEngineSettings, load_settings

__all__ = ["RuleEngineSettings", "load_settings"]
