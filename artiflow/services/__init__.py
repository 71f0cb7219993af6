"""Services — session driving, persistence and the LLM producer."""
