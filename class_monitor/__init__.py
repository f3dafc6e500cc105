"""Classroom attendance monitor: detect, recognize and alert on unexcused presence."""

__version__ = "0.1.0"
