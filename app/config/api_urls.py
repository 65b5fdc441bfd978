from django.urls import path, include
from rest_framework.routers import DefaultRouter
from devices.views import DeviceViewSet, device_heartbeat
from events.views import AttendanceEventViewSet
from presence.views import MemberBillingView, MemberPresenceView, MemberSessionView, door_access_webhook

from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

router = DefaultRouter()
router.register(r'devices', DeviceViewSet)
router.register(r'events', AttendanceEventViewSet)

urlpatterns = [
    path('auth/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('auth/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('devices/heartbeat', device_heartbeat, name='device-heartbeat'),
    path('attendance/access', door_access_webhook, name='attendance-access'),
    path('presence/<str:member_id>/', MemberPresenceView.as_view(), name='member-presence'),
    path('presence/<str:member_id>/session/', MemberSessionView.as_view(), name='member-session'),
    path('presence/<str:member_id>/billing/', MemberBillingView.as_view(), name='member-billing'),
    path('', include(router.urls)),
]
