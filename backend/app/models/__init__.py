from app.models.app_settings import AppSettings
from app.models.drop import Drop

__all__ = [
    "AppSettings",
    "Drop",
]
