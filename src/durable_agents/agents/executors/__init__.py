"""Task executors shipped with the agent catalog."""
