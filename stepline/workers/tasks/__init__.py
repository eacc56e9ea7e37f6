"""
Arq 任务定义模块
"""

from . import pipeline
from .pipeline import execute_run, scheduler_tick

__all__ = ["pipeline", "execute_run", "scheduler_tick"]
