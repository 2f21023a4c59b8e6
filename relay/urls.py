from django.urls import path
from . import views

app_name = 'relay'

urlpatterns = [
    path('send-email', views.send_email, name='send_email'),
    path('send-borrow-notification', views.send_borrow_notification, name='send_borrow_notification'),
    path('send-return-notification', views.send_return_notification, name='send_return_notification'),
    path('send-registration-confirmation', views.send_registration_confirmation,
         name='send_registration_confirmation'),
    path('send-overdue-notification', views.send_overdue_notification, name='send_overdue_notification'),
    path('send-bulk-overdue-notifications', views.send_bulk_overdue_notifications,
         name='send_bulk_overdue_notifications'),
    path('send-announcement', views.send_announcement, name='send_announcement'),
    path('test-email', views.test_email, name='test_email'),
]
