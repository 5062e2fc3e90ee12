"""Generation gateway, retrieval clients and JSON extraction helpers."""

from .extract import extract_json_array, extract_json_object
from .generation import GenerationGateway, OllamaGateway
from .retrieval import HttpRetriever, Retriever, WebFetcher

__all__ = [
    "GenerationGateway",
    "HttpRetriever",
    "OllamaGateway",
    "Retriever",
    "WebFetcher",
    "extract_json_array",
    "extract_json_object",
]
