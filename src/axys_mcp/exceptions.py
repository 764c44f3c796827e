"""Custom exceptions for the AXYS gateway."""


class UpstreamError(Exception):
    """Raised when the AXYS search API cannot serve a request.

    The message is always one of three shapes so callers can tell the cases
    apart: the API answered with an error (``"<API> Error: ... (Status: N)"``),
    no response arrived (``"No response received from <API>"``), or the request
    could not be built at all (``"Request setup error: ..."``).
    """
