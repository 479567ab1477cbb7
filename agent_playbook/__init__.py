"""Scored, self-curating playbook of rules learned from coding-agent sessions."""

__version__ = "0.1.0"
