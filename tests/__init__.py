"""
SkyMosaic Test Suite

Structure:
- unit/: Unit tests for individual components (no network)
- integration/: Live HiPS fetches, skipped unless SKYMOSAIC_LIVE=1
"""
