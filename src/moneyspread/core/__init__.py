from moneyspread.core.config import AppConfig, load_app_config_from_env

__all__ = ["AppConfig", "load_app_config_from_env"]
