from django.apps import AppConfig, apps
from django.db.models.signals import post_migrate


class CoreConfig(AppConfig):
    name = 'core'
    verbose_name = 'Checkout Core'

    def ready(self):
        from .bootstrap import bootstrap_admin_after_migrate

        # core has no models and never receives post_migrate itself
        post_migrate.connect(
            bootstrap_admin_after_migrate,
            sender=apps.get_app_config('auth'),
            dispatch_uid='core.bootstrap_admin',
        )
