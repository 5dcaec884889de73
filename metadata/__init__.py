from .merge import build_entry_sources, merge_missing, resolve_item_metadata

__all__ = ["build_entry_sources", "merge_missing", "resolve_item_metadata"]
