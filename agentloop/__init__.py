"""AgentLoop - tool-calling agent loop for local models.

Streams text from a local Ollama backend, extracts tool calls from the
free-form output, gates side-effecting calls behind user approval, and feeds
the observation back until a final answer is produced.
"""

__version__ = "0.1.0"
