"""Quest metrics, evaluation and reward rules."""
