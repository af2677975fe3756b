"""Domain exceptions raised by the dispatch services and mapped to HTTP errors by the API"""


class BulkJobError(Exception):
    """Base class for bulk job errors"""
    status_code = 400


class JobNotFoundError(BulkJobError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class EventNotFoundError(BulkJobError):
    status_code = 404

    def __init__(self, event_id: int):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


class InvalidJobRequestError(BulkJobError):
    status_code = 400


class JobBusyError(BulkJobError):
    """Another invocation holds the job's dispatch lease"""
    status_code = 409

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is already being processed")
        self.job_id = job_id
