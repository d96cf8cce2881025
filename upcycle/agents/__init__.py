"""
Generation agents: backend clients, prompts and the orchestrator that drives them.
"""

from .backend import GenerationBackend, OllamaBackend, MockBackend, get_generation_backend, check_backend_health
from .orchestrator import (
    GenerationOrchestrator,
    GenerationPolicy,
    GenerationResult,
    GenerationEvent,
    parse_project_details,
    parse_project_names,
)

__all__ = [
    'GenerationBackend',
    'OllamaBackend',
    'MockBackend',
    'get_generation_backend',
    'check_backend_health',
    'GenerationOrchestrator',
    'GenerationPolicy',
    'GenerationResult',
    'GenerationEvent',
    'parse_project_details',
    'parse_project_names',
]
