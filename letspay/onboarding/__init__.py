"""Onboarding: connect -> choose name -> verify identity -> accept credit."""

from letspay.onboarding.machine import (
    OnboardingMachine,
    OnboardingSignals,
    OnboardingState,
    derive_state,
)

__all__ = [
    "OnboardingState",
    "OnboardingSignals",
    "OnboardingMachine",
    "derive_state",
]
