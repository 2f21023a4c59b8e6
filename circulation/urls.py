from django.urls import path
from . import views

app_name = 'circulation'

urlpatterns = [
    path('reconcile/', views.reconcile, name='reconcile'),
    path('overdue-report/', views.overdue_report, name='overdue_report'),
    path('borrow/', views.borrow, name='borrow'),
    path('return/', views.return_books, name='return'),
    path('fines/<str:fine_id>/pay/', views.pay_fine, name='pay_fine'),
    path('students/<str:student_id>/fines/', views.student_fines, name='student_fines'),
    path('students/<str:student_id>/notify/', views.notify_student, name='notify_student'),
    path('notify-overdue/', views.notify_overdue, name='notify_overdue'),
]
