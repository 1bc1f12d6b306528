"""Geospatial discovery and search core for the CoShop marketplace."""
