# production_mgmt/urls.py
from django.http import JsonResponse
from django.urls import path, include


def healthz(request):
    return JsonResponse({"status": "ok"})


urlpatterns = [
    path('api/', include('order_processing.api_urls')),
    path('healthz/', healthz, name='healthz'),
]
