"""
stepstream - follow a research agent's tool calls as they stream in.
"""

__version__ = "0.1.0"

from .aggregator import StepAggregator as StepAggregator
from .app import open_session as open_session
from .config import ClientConfig as ClientConfig
from .grouping import group_steps as group_steps
from .history import HttpHistoryStore as HttpHistoryStore
from .history import InMemoryHistoryStore as InMemoryHistoryStore
from .models import RunState as RunState
from .models import Step as Step
from .models import StepGroup as StepGroup
from .session import ResearchSession as ResearchSession
from .sse import SSEDecoder as SSEDecoder
from .sse import decode_sse as decode_sse
