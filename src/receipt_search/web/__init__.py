"""
Django JSON API for the precision search pipeline.
"""
