"""Disk, memory and systemd status built from the shared read-only commands."""


def _watched(ctx):
    raw = ctx.store.get("services") or ctx.config.get("services") or "ssh,cron"
    if isinstance(raw, list):
        return [str(s) for s in raw if s]
    return [s.strip() for s in str(raw).split(",") if s.strip()]


async def _disk(ctx):
    result = await ctx.exec.run_async("df")
    if not result.ok:
        return None
    lines = result.stdout.splitlines()
    if len(lines) < 2:
        return None
    parts = lines[1].split()
    # Filesystem 1B-blocks Used Available Use% Mounted
    return {"total": int(parts[1]), "used": int(parts[2]), "available": int(parts[3])}


async def _memory(ctx):
    result = await ctx.exec.run_async("free")
    if not result.ok:
        return None
    for line in result.stdout.splitlines():
        if line.startswith("Mem:"):
            parts = line.split()
            return {"total": int(parts[1]), "used": int(parts[2])}
    return None


async def _services(ctx):
    states = {}
    for name in _watched(ctx):
        result = await ctx.exec.run_async("systemctl:is-active", [name])
        states[name] = result.stdout or "unknown"
    return states


async def status(request, ctx):
    return {
        "disk": await _disk(ctx),
        "memory": await _memory(ctx),
        "services": await _services(ctx),
    }


def activate(ctx):
    ctx.log.info("Watching services: %s", ", ".join(_watched(ctx)))


async def get_widget_data(key, ctx):
    if key != "health-summary":
        return None
    return await status(None, ctx)


api = {"GET /status": status}
