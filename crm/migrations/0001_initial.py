# Generated migration for Lead, LeadCounter and SyncFailure models

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Lead',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('business_id', models.CharField(max_length=32, unique=True)),
                ('phone', models.CharField(max_length=32)),
                ('phone_normalized', models.CharField(db_index=True, max_length=32, unique=True)),
                ('country_iso', models.CharField(blank=True, default='', max_length=2)),
                ('country_code', models.CharField(blank=True, default='', max_length=8)),
                ('local_number', models.CharField(blank=True, default='', max_length=32)),
                ('name', models.CharField(blank=True, default='', max_length=255)),
                ('email', models.CharField(blank=True, default='', max_length=255)),
                ('stage', models.CharField(choices=[('Not Assigned', 'Not Assigned'), ('agent_working', 'Agent Working'), ('sales_review', 'Sales Review'), ('payment_pending', 'Payment Pending'), ('delivery', 'Delivery'), ('completed', 'Completed'), ('dead', 'Dead')], db_index=True, default='Not Assigned', max_length=32)),
                ('agent', models.CharField(blank=True, default='Not Assigned', max_length=255)),
                ('status', models.CharField(blank=True, default='Lead', max_length=255)),
                ('location', models.CharField(blank=True, default='', max_length=255)),
                ('product', models.CharField(blank=True, default='CGI', max_length=255)),
                ('source', models.CharField(blank=True, default='', max_length=255)),
                ('message', models.TextField(blank=True, default='')),
                ('remark', models.TextField(blank=True, default='')),
                ('registration_number', models.CharField(blank=True, default='', max_length=64)),
                ('rating', models.CharField(blank=True, default='', max_length=64)),
                ('team_2', models.CharField(blank=True, default='', max_length=255)),
                ('status_2', models.CharField(blank=True, default='', max_length=255)),
                ('remark_2', models.TextField(blank=True, default='')),
                ('community_status', models.CharField(blank=True, default='', max_length=64)),
                ('sheet_row', models.PositiveIntegerField(blank=True, null=True)),
                ('history', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='LeadCounter',
            fields=[
                ('name', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('value', models.PositiveBigIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='SyncFailure',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('source', models.CharField(db_index=True, max_length=64)),
                ('phone', models.CharField(blank=True, default='', max_length=32)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('error', models.TextField(blank=True, default='')),
                ('retry_count', models.PositiveIntegerField(default=0)),
                ('resolved', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
