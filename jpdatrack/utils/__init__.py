"""Utility helpers for jpdatrack."""
