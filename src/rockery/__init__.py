"""
Rockery - transparent HTTP mocking gateway.
"""

__version__ = '1.0.0'
