"""tariffscope: landed-cost scenario analysis and background job orchestration."""

__version__ = "0.3.0"
