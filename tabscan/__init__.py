"""tabscan: turn document photos into structured data rows"""

__version__ = '1.0.0'
