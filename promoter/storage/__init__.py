"""
对象存储模块
"""
from .s3 import S3Store, Store

__all__ = ["S3Store", "Store"]
