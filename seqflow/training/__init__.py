"""Losses, optimizers, schedules, metrics and the training loop."""
