"""Cumulative per-mode quality feedback built from meta analyses."""
