#!/usr/bin/env python3
"""
工具函数测试：Voigt 转换、分块调度与日志配置
"""

import logging
import threading

import numpy as np
import pytest

from latticestrain.utils.exceptions import AnalysisCancelledError
from latticestrain.utils.utils import TensorConverter, chunk_ranges, map_chunks, setup_logging


class TestTensorConverter:
    """Voigt 转换"""

    def test_strain_engineering_shear(self):
        tensor = np.array([[0.01, 0.002, 0.003], [0.002, 0.02, 0.004], [0.003, 0.004, 0.03]])
        voigt = TensorConverter.to_voigt(tensor, tensor_type="strain")
        np.testing.assert_allclose(voigt, [0.01, 0.02, 0.03, 0.008, 0.006, 0.004])
        np.testing.assert_allclose(TensorConverter.from_voigt(voigt), tensor)

    def test_stress_no_factor(self):
        tensor = np.array([[1.0, 4.0, 5.0], [4.0, 2.0, 6.0], [5.0, 6.0, 3.0]])
        voigt = TensorConverter.to_voigt(tensor, tensor_type="stress")
        np.testing.assert_allclose(voigt, [1.0, 2.0, 3.0, 6.0, 5.0, 4.0])

    def test_batch(self):
        tensors = np.stack([np.eye(3) * k for k in range(4)])
        voigt = TensorConverter.to_voigt(tensors)
        assert voigt.shape == (4, 6)
        np.testing.assert_allclose(voigt[:, 0], np.arange(4))

    def test_asymmetric_is_symmetrized(self, caplog):
        tensor = np.zeros((3, 3))
        tensor[0, 1] = 0.02
        with caplog.at_level(logging.WARNING):
            voigt = TensorConverter.to_voigt(tensor)
        assert voigt[5] == pytest.approx(0.02)
        assert "不对称" in caplog.text

    def test_invalid_input(self):
        with pytest.raises(ValueError):
            TensorConverter.to_voigt(np.zeros((2, 2)))
        with pytest.raises(ValueError):
            TensorConverter.to_voigt(np.zeros((3, 3)), tensor_type="stiffness")
        with pytest.raises(ValueError):
            TensorConverter.from_voigt(np.zeros(5))


class TestChunks:
    """分块调度"""

    def test_chunk_ranges(self):
        assert chunk_ranges(10, 4) == [(0, 4), (4, 8), (8, 10)]
        assert chunk_ranges(0, 4) == []

    @pytest.mark.parametrize("workers", [1, 4])
    def test_results_in_order(self, workers):
        out = np.zeros(103)

        def _fill(start, stop):
            out[start:stop] = np.arange(start, stop)
            return start

        results = map_chunks(_fill, 103, 10, num_workers=workers)
        assert results == list(range(0, 103, 10))
        np.testing.assert_array_equal(out, np.arange(103))

    def test_cancel(self):
        event = threading.Event()
        event.set()
        with pytest.raises(AnalysisCancelledError):
            map_chunks(lambda a, b: None, 50, 10, num_workers=1, cancel_event=event)
        with pytest.raises(AnalysisCancelledError):
            map_chunks(lambda a, b: None, 50, 10, num_workers=3, cancel_event=event)

    def test_errors_propagate(self):
        def _boom(start, stop):
            if start == 20:
                raise RuntimeError("chunk failed")
            return start

        with pytest.raises(RuntimeError, match="chunk failed"):
            map_chunks(_boom, 50, 10, num_workers=3)


class TestSetupLogging:
    """日志配置"""

    def test_writes_run_log(self, tmp_path):
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            setup_logging(str(tmp_path))
            logging.getLogger("latticestrain.test").debug("debug message")
            for handler in root.handlers:
                handler.flush()
            text = (tmp_path / "run.log").read_text(encoding="utf-8")
            assert "debug message" in text
        finally:
            for handler in root.handlers:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
            root.setLevel(level)
