"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
Admission failures (duplicate or already-queued jobs) are not exceptions; they are
reported through return values of the queue and engine.
"""

class DownloadCancelledError(Exception):
    """Custom exception for cancelled downloads."""
    pass

class InfoExtractionError(Exception):
    """Raised when metadata or playlist information cannot be fetched from a URL."""
    pass

class DependencyNotFoundError(Exception):
    """Raised when a required external executable (yt-dlp, ffmpeg) cannot be located."""
    pass

class TranscodeError(Exception):
    """Raised when an ffmpeg post-processing step fails."""
    pass
