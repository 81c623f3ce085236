"""
Plan Takeoff
Tile-based VLM scanning of scanned architectural plans into quantity takeoffs
"""

__version__ = "0.1.0"
