"""
Test suite for the MP3 Maker service.

Test modules mirror the layout of the mp3maker package.
"""
