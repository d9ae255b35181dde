from .resolver import MAX_REFERENCES, PLACEHOLDER, ReferenceResolver, ResolvedPrompt, rewrite_tags

__all__ = ["MAX_REFERENCES", "PLACEHOLDER", "ReferenceResolver", "ResolvedPrompt", "rewrite_tags"]
