"""
Test Suite: GPU Context

Dispatch sizing, chunk planning, chunked dispatch, kernel error wrapping,
async readback and the one-burst-at-a-time lock.
"""

import asyncio

import pytest
import torch

from burst_errors import DispatchError, SetupError
from burst_gpu import GpuContext, RowChunk, plan_row_chunks, select_device
from burst_params import AlignParams, GuidedFilterParams, LuminanceParams
from burst_tiles import workgroup_count


class TestDispatchSizing:
    def test_workgroup_count(self):
        assert workgroup_count(640, 16) == 40
        assert workgroup_count(641, 16) == 41
        assert workgroup_count(1, 16) == 1

    def test_plan_row_chunks(self):
        assert plan_row_chunks(10, 4) == [RowChunk(0, 4), RowChunk(4, 4), RowChunk(8, 2)]
        assert plan_row_chunks(4, 4) == [RowChunk(0, 4)]
        assert plan_row_chunks(0, 4) == []

    def test_plan_row_chunks_covers_every_row_once(self):
        rows = [r for c in plan_row_chunks(37, 3) for r in range(c.offset, c.offset + c.rows)]
        assert rows == list(range(37))

    def test_bad_chunk_size(self):
        with pytest.raises(ValueError):
            plan_row_chunks(10, 0)


class TestGpuContext:
    def setup_method(self):
        self.ctx = GpuContext("cpu")

    def test_cpu_context(self):
        assert self.ctx.device.type == "cpu"
        assert self.ctx.stream is None
        assert not self.ctx.low_priority_enabled

    @pytest.mark.skipif(torch.cuda.is_available(), reason="needs a machine without CUDA")
    def test_missing_cuda_is_setup_error(self):
        with pytest.raises(SetupError):
            select_device("cuda")

    def test_pipeline_size_contract(self):
        def kernel(raw, workgroups, dst):
            pass
        with pytest.raises(SetupError):
            self.ctx.create_pipeline("bad_luminance", LuminanceParams, kernel, 20)

    def test_pipeline_cache(self):
        def kernel(raw, workgroups, dst):
            pass
        a = self.ctx.create_pipeline("noop", LuminanceParams, kernel, 16)
        assert self.ctx.create_pipeline("noop", LuminanceParams, kernel, 16) is a

        def other(raw, workgroups, dst):
            pass
        with pytest.raises(SetupError):
            self.ctx.create_pipeline("noop", LuminanceParams, other, 16)

    def test_kernel_failure_is_dispatch_error_and_context_stays_usable(self):
        calls = []

        def kernel(raw, workgroups, dst):
            p = GuidedFilterParams.unpack(raw)
            if p.radius == 0:
                raise RuntimeError("boom")
            calls.append(p.radius)

        pipe = self.ctx.create_pipeline("fragile", GuidedFilterParams, kernel, 16)
        dst = torch.zeros(1)
        with pytest.raises(DispatchError) as info:
            self.ctx.dispatch(pipe, GuidedFilterParams(1, 1, 0, 0.1), (dst,), (1, 1))
        assert isinstance(info.value.original_error, RuntimeError)

        self.ctx.dispatch(pipe, GuidedFilterParams(1, 1, 3, 0.1), (dst,), (1, 1))
        assert calls == [3]

    def test_wrong_params_type(self):
        def kernel(raw, workgroups):
            pass
        pipe = self.ctx.create_pipeline("typed", GuidedFilterParams, kernel, 16)
        with pytest.raises(DispatchError):
            self.ctx.dispatch(pipe, LuminanceParams(1, 1, 0), (), (1, 1))

    def test_run_chunked_rewrites_row_offset(self):
        seen = []

        def kernel(raw, workgroups, out):
            p = AlignParams.unpack(raw)
            seen.append((p.tile_row_offset, workgroups))

        pipe = self.ctx.create_pipeline("record_rows", AlignParams, kernel, 48)
        yields = []

        async def counting_yield():
            yields.append(len(seen))

        self.ctx.yield_to_scheduler = counting_yield
        params = AlignParams(64, 48, 16, 8, 2, 7, 10, 1, 0, 0, 99)
        n = asyncio.run(self.ctx.run_chunked(pipe, params, (torch.zeros(1),), 7, 10, 4, 2))

        assert n == 3
        assert seen == [(0, (7, 4)), (4, (7, 4)), (8, (7, 2))]
        # after every second chunk and once at the end
        assert yields == [2, 3]

    def test_map_read(self):
        src = torch.arange(12, dtype=torch.float32).reshape(3, 4)
        staging = self.ctx.new_staging((3, 4), torch.float32)
        out = asyncio.run(self.ctx.map_read(src, staging))
        assert out is staging
        assert torch.equal(out, src)

    def test_upload_u8(self):
        data = torch.full((2, 3, 4), 255, dtype=torch.uint8)
        data[..., 3] = 7
        out = torch.zeros(3, 2, 3)
        alpha = self.ctx.upload(data, out)
        assert torch.allclose(out, torch.ones(3, 2, 3))
        assert alpha.dtype == torch.uint8
        assert torch.equal(alpha, torch.full((2, 3), 7, dtype=torch.uint8))


class TestExclusive:
    def test_bursts_do_not_interleave(self):
        ctx = GpuContext("cpu")
        events = []

        async def burst(name):
            async with ctx.exclusive():
                events.append(("start", name))
                await asyncio.sleep(0.01)
                events.append(("end", name))

        async def main():
            await asyncio.gather(burst("a"), burst("b"), burst("c"))

        asyncio.run(main())
        assert len(events) == 6
        for i in range(0, 6, 2):
            assert events[i][0] == "start"
            assert events[i + 1] == ("end", events[i][1])
        assert not ctx.busy

    def test_lock_released_on_error(self):
        ctx = GpuContext("cpu")

        async def failing():
            async with ctx.exclusive():
                raise DispatchError("readback failed")

        with pytest.raises(DispatchError):
            asyncio.run(failing())
        assert not ctx.busy


class TestStreamHandOff:
    def test_scope_nests_on_cpu(self):
        ctx = GpuContext("cpu")
        with ctx.stream_scope():
            with ctx.stream_scope():
                x = torch.ones(3) * 2
        assert torch.equal(x, torch.full((3,), 2.0))

    @pytest.mark.skipif(not torch.cuda.is_available(), reason="needs CUDA")
    def test_caller_stream_sees_kernel_writes(self):
        ctx = GpuContext("cuda")

        def slow_fill(raw, workgroups, dst):
            torch.cuda._sleep(50_000_000)
            dst.fill_(3.0)

        pipe = ctx.create_pipeline("slow_fill", GuidedFilterParams, slow_fill, 16)
        dst = torch.zeros(1 << 20, device=ctx.device)
        ctx.dispatch(pipe, GuidedFilterParams(1, 1, 1, 0.1), (dst,), (1, 1))
        # read on the default stream straight after the dispatch
        assert float(dst.sum()) == 3.0 * (1 << 20)

    @pytest.mark.skipif(not torch.cuda.is_available(), reason="needs CUDA")
    def test_readback_waits_for_caller_stream(self):
        ctx = GpuContext("cuda")
        src = torch.zeros(1 << 20, device=ctx.device)
        torch.cuda._sleep(50_000_000)
        src.fill_(5.0)
        staging = ctx.new_staging(tuple(src.shape), src.dtype)
        out = asyncio.run(ctx.map_read(src, staging))
        assert torch.all(out == 5.0)
