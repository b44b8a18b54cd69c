"""errors.py

Exception classes raised by the services and rendered as JSON by the error
handler registered in app.py.

 - ValidationError: malformed input (400)
 - OwnResourceError: a church asked for its own resource (400)
 - PermissionDenied: the actor lacks the role / church ownership (403)
 - NotFoundError: the entity does not exist (404)
 - ConflictError: a state-machine guard failed (409)
 - ImportFileError: the uploaded spreadsheet could not be read (400)
"""


class MinistryShareError(Exception):
    status = 400
    code = 'ERROR'

    def __init__(self, message=None, code=None, status=None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        if status:
            self.status = status

    def to_dict(self):
        return {'success': False, 'error': self.code, 'message': self.message}


class ValidationError(MinistryShareError):
    status = 400
    code = 'VALIDATION_ERROR'

    def __init__(self, message=None, code=None, details=None):
        super().__init__(message, code)
        self.details = details

    def to_dict(self):
        data = super().to_dict()
        if self.details:
            data['details'] = self.details
        return data


class OwnResourceError(MinistryShareError):
    status = 400
    code = 'OWN_RESOURCE'


class PermissionDenied(MinistryShareError):
    status = 403
    code = 'FORBIDDEN'


class NotFoundError(MinistryShareError):
    status = 404
    code = 'NOT_FOUND'


class ConflictError(MinistryShareError):
    status = 409
    code = 'CONFLICT'


class ImportFileError(MinistryShareError):
    status = 400
    code = 'INVALID_FILE'
