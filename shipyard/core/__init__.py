"""Rollout control core: persistence, builder, scheduler, health, intake."""
