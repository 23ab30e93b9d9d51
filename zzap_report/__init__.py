"""Resumable batch scraping jobs that build ZZAP price and demand reports."""

__version__ = "1.0.0"
