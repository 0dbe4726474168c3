"""Lark bot: chat instructions to GitHub pull requests via an AI planner."""

__version__ = "0.1.0"
