"""Agent integration: stream events, clients and turn orchestration."""
