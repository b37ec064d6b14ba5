"""Agent Engine: streaming LLM orchestration for audit and collaboration workflows."""
