"""Commander -- resilient tool-calling orchestration for a game-playing LLM agent."""
