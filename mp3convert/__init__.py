"""MP4 to MP3 conversion service with a daily quota and timed cleanup."""

__version__ = "0.1"
