"""
MP3 Maker: converts YouTube, SoundCloud and Bandcamp links to MP3 with live progress.
"""

__version__ = "1.0.0"
