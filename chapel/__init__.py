__all__ = ['AttendanceEngine', 'app']


def __getattr__(name: str):
    if name == 'app':
        from .main import app

        return app
    if name == 'AttendanceEngine':
        from .domain.engine import AttendanceEngine

        return AttendanceEngine
    raise AttributeError(name)
