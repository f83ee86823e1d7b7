from fastapi import Request

from chapel.domain.engine import AttendanceEngine


def get_engine(request: Request) -> AttendanceEngine:
    return request.app.state.engine
