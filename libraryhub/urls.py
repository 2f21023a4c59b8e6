from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),

    # Mail relay (same paths the browser client posts to)
    path('api/', include('relay.urls')),

    # Apps
    path('circulation/', include('circulation.urls')),
]
