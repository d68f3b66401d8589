"""Durable per-instance task orchestration for stateful agents."""

__version__ = "0.1.0"
