"""Error taxonomy for crawling, acquisition, extraction and job control."""


class RegwatchError(Exception):
    """Base class for all domain errors."""


class NetworkError(RegwatchError):
    """Timeout or non-2xx response while fetching or navigating."""

    def __init__(self, url: str, message: str, status: int = None):
        super().__init__(message)
        self.url = url
        self.status = status


class RobotsDisallowed(RegwatchError):
    def __init__(self, url: str):
        super().__init__(f"Blocked by robots.txt: {url}")
        self.url = url


class InvalidPdf(RegwatchError):
    """Payload at a PDF link is not a PDF (HTML content-type or bad magic header)."""

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class ExtractionFailure(RegwatchError):
    """The external classifier raised or returned malformed output."""


class PersistenceError(RegwatchError):
    """A store write failed."""


class JobNotFound(RegwatchError):
    def __init__(self, job_id: str = ""):
        super().__init__("Crawl job not found")
        self.job_id = job_id


class SourceNotFound(RegwatchError):
    def __init__(self, source_id: str = ""):
        super().__init__("Source not found")
        self.source_id = source_id


class InvalidTransition(RegwatchError):
    """A job status change that the lifecycle does not permit."""
