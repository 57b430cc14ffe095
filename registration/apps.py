"""
App configuration for the registration pipeline.

The app config owns the process-wide :class:`RegistrationPipeline`,
including its circuit breaker registry.  It is built once in
:meth:`RegistrationConfig.ready` and replaced only through
:meth:`RegistrationConfig.rebuild_pipeline`; code that needs it calls
:func:`get_pipeline` instead of holding module-level state.
"""
from __future__ import annotations

from django.apps import AppConfig, apps


class RegistrationConfig(AppConfig):
    name = 'registration'
    default_auto_field = 'django.db.models.BigAutoField'

    pipeline = None

    def ready(self) -> None:
        self.rebuild_pipeline()

    def rebuild_pipeline(self, **overrides):
        """Create a fresh pipeline from settings.

        Breaker state does not survive a rebuild, mirroring a process
        restart.  Keyword overrides are passed to the pipeline factory.
        """
        from .services.processor import build_pipeline

        self.pipeline = build_pipeline(**overrides)
        return self.pipeline


def get_pipeline():
    return apps.get_app_config('registration').pipeline
