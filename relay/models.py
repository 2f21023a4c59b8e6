from django.db import models


class OutboundEmail(models.Model):
    KIND_CHOICES = [
        ('EMAIL', 'Email'),
        ('BORROW', 'Borrow Confirmation'),
        ('RETURN', 'Return Confirmation'),
        ('REGISTRATION', 'Registration Confirmation'),
        ('OVERDUE', 'Overdue Notice'),
        ('ANNOUNCEMENT', 'Announcement'),
        ('TEST', 'Test Email'),
    ]
    STATUS_CHOICES = [
        ('SENT', 'Sent'),
        ('FAILED', 'Failed'),
    ]

    kind = models.CharField(max_length=20, choices=KIND_CHOICES, verbose_name="Message Type")
    recipients = models.TextField(verbose_name="Recipients", help_text="Comma-separated addresses (To or BCC)")
    subject = models.CharField(max_length=255, verbose_name="Subject")
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, verbose_name="Status")
    error = models.TextField(blank=True, verbose_name="Error")
    created_at = models.DateTimeField(auto_now_add=True, verbose_name="Sent At")

    class Meta:
        ordering = ['-created_at']
        verbose_name = "Outbound Email"
        verbose_name_plural = "Outbound Emails"
        indexes = [
            models.Index(fields=['kind', 'status'], name='relay_email_kind_status_idx'),
        ]

    def __str__(self):
        return f"{self.get_kind_display()} to {self.recipient_count} recipient(s) ({self.status})"

    @property
    def recipient_count(self):
        return len([address for address in self.recipients.split(',') if address.strip()])
