# Portfolio Backend Models
from app.models.base import BaseModel
from app.models.setting import Setting
from app.models.user import User

__all__ = [
    "BaseModel",
    "Setting",
    "User",
]
