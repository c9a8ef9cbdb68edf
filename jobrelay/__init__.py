"""jobrelay - Job Orchestrator

Mediates calls to slow, rate-limited external processing services
(text generation, video transcoding) for the inspection reporting app.
"""

__version__ = "0.1.0"
