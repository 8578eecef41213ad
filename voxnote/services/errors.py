class ServiceError(Exception):
    pass


class GeminiConfigurationError(ServiceError):
    pass


class GeminiRequestError(ServiceError):
    pass


class QRRenderError(ServiceError):
    pass
