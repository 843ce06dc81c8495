"""
Management command to create the default admin account.

Usage:
    python manage.py bootstrap_admin
    python manage.py bootstrap_admin --email ops@example.com --password s3cret
"""
from django.core.management.base import BaseCommand, CommandError

from core.bootstrap import ensure_default_admin


class Command(BaseCommand):
    help = 'Create the default admin account if it does not exist'

    def add_arguments(self, parser):
        parser.add_argument('--email', help='Admin e-mail (default: DEFAULT_ADMIN_EMAIL)')
        parser.add_argument('--password', help='Admin password (default: DEFAULT_ADMIN_PASSWORD)')

    def handle(self, *args, **options):
        user, created = ensure_default_admin(options['email'], options['password'])
        if user is None:
            raise CommandError(
                'No admin credentials given. Set DEFAULT_ADMIN_EMAIL and '
                'DEFAULT_ADMIN_PASSWORD or pass --email/--password.'
            )
        if created:
            self.stdout.write(self.style.SUCCESS(f'Admin user {user.email} created.'))
        else:
            self.stdout.write(self.style.WARNING(f'Admin user {user.email} already exists.'))
