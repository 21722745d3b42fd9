from rest_framework.views import exception_handler


def msg_exception_handler(exc, context):
    """
    Render every DRF error as ``{"msg": "..."}`` keeping DRF's status code.
    """
    response = exception_handler(exc, context)
    if response is None:
        return None

    data = response.data
    if isinstance(data, dict) and "detail" in data:
        msg = str(data["detail"])
    elif isinstance(data, dict):
        # field errors from serializer validation
        field, errors = next(iter(data.items()))
        first = errors[0] if isinstance(errors, list) and errors else errors
        msg = f"{field}: {first}"
    elif isinstance(data, list) and data:
        msg = str(data[0])
    else:
        msg = str(data)

    response.data = {"msg": msg}
    return response
