from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('orders', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='order',
            name='gateway_amount',
            field=models.PositiveIntegerField(blank=True, help_text='Amount in minor units bound to the gateway order', null=True),
        ),
    ]
