"""In-process fakes of the system under test."""
