"""Custody gateway: signup, MPC wallet and transfer orchestration backend."""

__version__ = "0.1.0"
