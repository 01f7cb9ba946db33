"""Shared kernel: errors, logging, configuration and enums."""
