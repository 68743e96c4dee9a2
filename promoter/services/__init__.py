"""
业务服务层模块
"""
from .alert_service import AlertService, Snapshot
from .image_service import ImageService

__all__ = [
    "AlertService",
    "Snapshot",
    "ImageService",
]
