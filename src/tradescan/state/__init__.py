"""State/store layer.

This package is the single source of truth for how incoming scan
observations are merged into per-position shop and waystone state, and
for the nearest-waystone annotation derived from that state.
"""
