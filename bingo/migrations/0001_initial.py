import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Province',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=128, unique=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Canton',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=128)),
                ('province', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='cantons', to='bingo.province')),
            ],
            options={
                'ordering': ['name'],
                'unique_together': {('province', 'name')},
            },
        ),
        migrations.CreateModel(
            name='Neighborhood',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=128)),
                ('canton', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='neighborhoods', to='bingo.canton')),
            ],
            options={
                'ordering': ['name'],
                'unique_together': {('canton', 'name')},
            },
        ),
        migrations.CreateModel(
            name='BingoTable',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=32, unique=True)),
                ('file_name', models.CharField(blank=True, max_length=255)),
                ('file_url', models.URLField(blank=True, max_length=512)),
                ('delivered', models.BooleanField(db_index=True, default=False)),
                ('manual_registration', models.BooleanField(default=False)),
                ('ocr_validated', models.BooleanField(default=False)),
                ('ocr_confidence', models.FloatField(blank=True, null=True)),
                ('ocr_keywords', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Bingo Table',
                'verbose_name_plural': 'Bingo Tables',
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='Campaign',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255)),
                ('message_template', models.TextField()),
                ('cohort_filters', models.JSONField(blank=True, default=dict)),
                ('total_recipients', models.PositiveIntegerField(default=0)),
                ('interval_minutes', models.PositiveIntegerField(default=1)),
                ('max_messages_per_hour', models.PositiveIntegerField(default=60)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('running', 'Running'), ('paused', 'Paused'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], db_index=True, default='pending', max_length=16)),
                ('image', models.FileField(blank=True, null=True, upload_to='campaigns/')),
                ('created_by', models.CharField(default='admin', max_length=64)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'verbose_name': 'Campaign',
                'verbose_name_plural': 'Campaigns',
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='SystemLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('level', models.CharField(choices=[('INFO', 'Info'), ('WARNING', 'Warning'), ('ERROR', 'Error'), ('CRITICAL', 'Critical')], db_index=True, default='INFO', max_length=16)),
                ('category', models.CharField(choices=[('REGISTRATION', 'Registration'), ('INVENTORY', 'Inventory'), ('CAMPAIGN', 'Campaign'), ('TRANSPORT', 'Transport'), ('CLASSIFIER', 'Classifier'), ('SYSTEM', 'System')], db_index=True, max_length=32)),
                ('message', models.CharField(max_length=512)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
            ],
            options={
                'verbose_name': 'System Log',
                'verbose_name_plural': 'System Logs',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Participant',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('phone', models.CharField(db_index=True, max_length=20)),
                ('id_card', models.CharField(db_index=True, max_length=20)),
                ('first_name', models.CharField(blank=True, max_length=128, null=True)),
                ('last_name', models.CharField(blank=True, max_length=128, null=True)),
                ('phone_verified', models.BooleanField(db_index=True, default=False)),
                ('otp_code', models.CharField(blank=True, max_length=64, null=True)),
                ('otp_expires_at', models.DateTimeField(blank=True, null=True)),
                ('address_detail', models.TextField(blank=True)),
                ('latitude', models.DecimalField(blank=True, decimal_places=7, max_digits=10, null=True)),
                ('longitude', models.DecimalField(blank=True, decimal_places=7, max_digits=10, null=True)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('assigned_table', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='holder', to='bingo.bingotable')),
                ('canton', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='bingo.canton')),
                ('neighborhood', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='bingo.neighborhood')),
                ('province', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='bingo.province')),
            ],
            options={
                'verbose_name': 'Participant',
                'verbose_name_plural': 'Participants',
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['phone', 'phone_verified'], name='bingo_part_phone_verif_idx'),
                    models.Index(fields=['id_card', 'phone_verified'], name='bingo_part_idcard_verif_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CampaignRecipientLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('phone', models.CharField(max_length=20)),
                ('first_name', models.CharField(blank=True, max_length=128)),
                ('last_name', models.CharField(blank=True, max_length=128)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('sent', 'Sent'), ('error', 'Error'), ('cancelled', 'Cancelled')], db_index=True, default='pending', max_length=16)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('sent_at', models.DateTimeField(blank=True, null=True)),
                ('campaign', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='logs', to='bingo.campaign')),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='campaign_logs', to='bingo.participant')),
            ],
            options={
                'verbose_name': 'Campaign Recipient Log',
                'verbose_name_plural': 'Campaign Recipient Logs',
                'ordering': ['id'],
                'indexes': [
                    models.Index(fields=['campaign', 'status'], name='bingo_log_campaign_status_idx'),
                ],
            },
        ),
    ]
