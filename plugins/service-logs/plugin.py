"""Systemd unit listing and journal tail."""

import re

_UNIT = re.compile(r"^[A-Za-z0-9@._-]+$")
_MAX_LINES = 1000


async def services(request, ctx):
    result = await ctx.exec.run_async("service-logs:list-units")
    if not result.ok:
        return {"error": result.stderr or "systemctl failed", "services": []}
    units = []
    for line in result.stdout.splitlines():
        parts = line.split(None, 4)
        if len(parts) >= 4:
            units.append(
                {
                    "unit": parts[0],
                    "load": parts[1],
                    "active": parts[2],
                    "sub": parts[3],
                    "description": parts[4] if len(parts) > 4 else "",
                }
            )
    return {"services": units}


async def logs(request, ctx):
    unit = request.query_params.get("unit", "")
    if not _UNIT.match(unit):
        return {"error": "Invalid unit name", "lines": []}
    try:
        count = int(request.query_params.get("lines", ctx.config.get("lines", 200)))
    except ValueError:
        count = 200
    count = max(1, min(count, _MAX_LINES))

    result = await ctx.exec.run_async("service-logs:journal", [unit, "-n", str(count)])
    if not result.ok:
        return {"error": result.stderr or "journalctl failed", "lines": []}
    return {"unit": unit, "lines": result.stdout.splitlines()}


api = {"GET /services": services, "GET /logs": logs}
