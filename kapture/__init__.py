"""Kapture: media download job reconciliation and retention service."""

__version__ = "0.1.0"
