"""Sample unit: records its lifecycle so tests can observe loads and reloads."""

GREETING = "hello from sample"

state = {"initialized": False}


def plugin_init(ctx):
    state["initialized"] = True
    state["unit_id"] = ctx.unit_id
    ctx.logger.info("sample unit initialized")
    ctx.emit("sample", {"greeting": GREETING})


def plugin_cleanup(ctx):
    state["initialized"] = False
    ctx.logger.info("sample unit cleaned up")
