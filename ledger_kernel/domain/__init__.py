"""Pure domain layer: clock, minor-unit amounts, DTOs, schedule and formula evaluation."""
