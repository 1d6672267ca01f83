"""Tools backing a task session: context management and checkpoints."""
