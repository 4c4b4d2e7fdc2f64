"""API 总路由：作业/队列接口与员工技能接口统一挂在 api_prefix 下。"""

from __future__ import annotations

from fastapi import APIRouter

from skillsync.api.v1 import jobs, skills
from skillsync.config import get_settings

api_router = APIRouter(prefix=get_settings().api_prefix)
for module, tag in ((jobs, "jobs"), (skills, "skills")):
    api_router.include_router(module.router, tags=[tag])
