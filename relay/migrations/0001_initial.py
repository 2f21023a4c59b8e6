from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='OutboundEmail',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('EMAIL', 'Email'), ('BORROW', 'Borrow Confirmation'), ('RETURN', 'Return Confirmation'), ('REGISTRATION', 'Registration Confirmation'), ('OVERDUE', 'Overdue Notice'), ('ANNOUNCEMENT', 'Announcement'), ('TEST', 'Test Email')], max_length=20, verbose_name='Message Type')),
                ('recipients', models.TextField(help_text='Comma-separated addresses (To or BCC)', verbose_name='Recipients')),
                ('subject', models.CharField(max_length=255, verbose_name='Subject')),
                ('status', models.CharField(choices=[('SENT', 'Sent'), ('FAILED', 'Failed')], max_length=10, verbose_name='Status')),
                ('error', models.TextField(blank=True, verbose_name='Error')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Sent At')),
            ],
            options={
                'verbose_name': 'Outbound Email',
                'verbose_name_plural': 'Outbound Emails',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['kind', 'status'], name='relay_email_kind_status_idx')],
            },
        ),
    ]
