"""Verification gate for generated artifacts."""

from src.verification.api_validator import APIValidator
from src.verification.critic import SemanticCritic
from src.verification.entropy import EntropyDetector
from src.verification.safety import CodeSafetyAnalyzer
from src.verification.verifier import ArtifactVerifier

__all__ = [
    "APIValidator",
    "ArtifactVerifier",
    "CodeSafetyAnalyzer",
    "EntropyDetector",
    "SemanticCritic",
]
