"""
Domain layer for EPUB to PDF relaying.
Provides gateways for fetching, converting and storing documents, the
progress broadcaster, and a service that drives one conversion job through
its stages so front-ends (HTTP or others) can share the same core logic.
"""

from .errors import PipelineError
from .events import Broadcaster, ListenerChannel, ProgressEvent
from .interfaces import ConverterGateway, FetchGateway, StorageGateway
from .service import ConversionService, JobResult, JobStatus
