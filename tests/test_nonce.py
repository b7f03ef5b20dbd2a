import asyncio

import pytest

from xsettle.infra.nonce import NonceCoordinator


def test_shared_lock_for_account():
    async def inner():
        coord = NonceCoordinator()
        lock_a1 = await coord.get_lock("0xAbC0000000000000000000000000000000000001")
        lock_a2 = await coord.get_lock("0xabc0000000000000000000000000000000000001")
        lock_b = await coord.get_lock("0xabc0000000000000000000000000000000000002")
        assert lock_a1 is lock_a2
        assert lock_a1 is not lock_b
        assert len(coord.accounts()) == 2

    asyncio.run(inner())


@pytest.mark.asyncio
async def test_submissions_serialize_per_signer():
    coord = NonceCoordinator()
    active = 0
    peak = 0
    order = []

    async def submit(name: str):
        nonlocal active, peak
        async with coord.submission("0xsigner"):
            active += 1
            peak = max(peak, active)
            order.append(name)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(submit(str(i)) for i in range(3)))
    assert peak == 1
    assert len(order) == 3


@pytest.mark.asyncio
async def test_different_signers_run_concurrently():
    coord = NonceCoordinator()
    inside = asyncio.Event()
    release = asyncio.Event()

    async def hold():
        async with coord.submission("0xbuyer"):
            inside.set()
            await release.wait()

    holder = asyncio.create_task(hold())
    await inside.wait()
    # Another signer is not blocked by the held lock.
    async with coord.submission("0xseller"):
        pass
    release.set()
    await holder
