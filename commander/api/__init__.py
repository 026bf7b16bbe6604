"""LLM side: providers, completion retry, compaction and the turn runner."""
