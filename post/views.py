from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from drf_yasg.utils import swagger_auto_schema

from chat.membership import toggle_interest
from .serializers import PostSerializer


class InterestView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        request_body=None,
        operation_description="Toggle interest; interest in an event also joins its chat.",
    )
    def put(self, request, post_id: int):
        post, interested = toggle_interest(request.user.id, post_id)
        return Response({
            "msg": "Interest added" if interested else "Interest removed",
            "interested": interested,
            "post": PostSerializer(post).data,
        })
