"""
Crawl discovery for the capture service.

Finds candidate pages under a seed URL, holds them until the user picks a
selection, then turns the selection into a crawl collection of capture jobs.
"""
