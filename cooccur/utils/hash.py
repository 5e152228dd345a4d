"""
Utility functions for hashing and deduplication.
"""
import hashlib


def compute_prompt_key(model: str, prompt: str) -> str:
    """
    Compute the cache key for one classifier call.

    Format: sha256(f"{model}::{prompt}")

    Args:
        model: Classifier model id (e.g., gpt-4o-mini)
        prompt: Fully rendered prompt text

    Returns:
        64-character hex SHA256 digest
    """
    hash_input = f"{model}::{prompt}"
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()
