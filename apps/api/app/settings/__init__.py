from app.settings.service import SettingsOverrideService, settings_override_service
from app.settings.types import Priority, SettingsDomain

__all__ = ["Priority", "SettingsDomain", "SettingsOverrideService", "settings_override_service"]
