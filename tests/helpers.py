import asyncio
from datetime import datetime, timezone
from io import BytesIO

from PIL import Image

from cutterworks.domain.capabilities import Actor
from cutterworks.domain.order import ItemSpec, Measurement
from cutterworks.domain.stages import Role
from cutterworks.services.engine import FileUpload

# Sunday morning; the following Tuesday is an open pickup day.
NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
PICKUP_DAY = "2026-10-20"

BAKER = Actor(user_id="u-1", role=Role.BAKER, email="baker@example.com", baker_id="B001")
OTHER_BAKER = Actor(user_id="u-2", role=Role.BAKER, email="other@example.com", baker_id="B002")
ADMIN = Actor(user_id="u-admin", role=Role.ADMIN, email="admin@example.com")


def run(coro):
    return asyncio.run(coro)


def png_bytes(color=(200, 120, 40)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (4, 4), color).save(buf, "PNG")
    return buf.getvalue()


def png_upload(name="inspo.png") -> FileUpload:
    return FileUpload(filename=name, content=png_bytes(), content_type="image/png")


def cutter(value=8.5) -> ItemSpec:
    return ItemSpec(type="Cutter", measurement=Measurement(value=value, unit="cm"))


async def completed_order(engine, items=1):
    """Walk a fresh order through the happy path up to Completed."""
    order = await engine.create_order(BAKER, [cutter() for _ in range(items)])
    for item in order.items:
        order, _ = await engine.upload_image(order.id, BAKER, item.id, "inspiration", png_upload())
    await engine.change_stage(order.id, BAKER, "Submitted")
    await engine.change_stage(order.id, ADMIN, "Under Review")
    await engine.change_stage(order.id, ADMIN, "Requires Approval", price=42.5)
    await engine.change_stage(order.id, BAKER, "Ready to Print", confirm=True)
    await engine.change_stage(order.id, ADMIN, "Printing")
    return await engine.change_stage(order.id, ADMIN, "Completed")
