"""feedbackbot: durable job-queue worker for automated code-change jobs."""

__version__ = "0.1.0"
