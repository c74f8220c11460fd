"""
Tests for the render state machine.

GL and GLFW are replaced with mocks so the per-frame sequence, the branch
selection and the resource lifecycle can be checked without a display.
"""

import math
import os
import sys
import unittest
from unittest import mock

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

pytest.importorskip("glfw")
pytest.importorskip("OpenGL.GL")

from markersight import renderer as renderer_module  # type: ignore
from markersight.animation import AnimationTrigger  # type: ignore
from markersight.calibration import CameraIntrinsics  # type: ignore
from markersight.errors import AssetLoadError, ShaderCompileError, ShaderLinkError  # type: ignore
from markersight.gl_resources import GpuResources  # type: ignore
from markersight.marker_detect import Pose  # type: ignore
from markersight.mesh import RenderableMesh, create_cube  # type: ignore
from markersight.renderer import RenderStateMachine  # type: ignore

INTRINSICS = CameraIntrinsics.from_focal(500.0, 500.0, 320.0, 240.0)
IN_FRONT = Pose([0.0, 0.0, 0.0], [0.0, 0.0, 0.5])
BEHIND = Pose([0.0, 0.0, 0.0], [0.0, 0.0, -0.5])
# Marker turned to face the camera: its +Z points back at the lens
FACING = Pose([math.pi, 0.0, 0.0], [0.0, 0.0, 0.5])


def _fake_gl():
    gl = mock.MagicMock(name="GL")
    gl.GL_COLOR_BUFFER_BIT = 0x4000
    gl.GL_DEPTH_BUFFER_BIT = 0x0100
    gl.GL_TRIANGLES = 0x0004
    gl.GL_VERTEX_SHADER = 0x8B31
    gl.GL_FRAGMENT_SHADER = 0x8B30
    gl.glGetShaderiv.return_value = 1
    gl.glGetProgramiv.return_value = 1
    gl.glCreateProgram.side_effect = [10, 11]
    gl.glGenVertexArrays.side_effect = iter(range(20, 40))
    gl.glGenBuffers.side_effect = iter(range(40, 60))
    gl.glGenTextures.return_value = 7
    gl.glGetUniformLocation.return_value = 0
    return gl


def _fake_glfw():
    glfw = mock.MagicMock(name="glfw")
    glfw.init.return_value = True
    glfw.create_window.return_value = "window"
    glfw.get_framebuffer_size.return_value = (640, 480)
    glfw.window_should_close.return_value = False
    return glfw


class TestGpuResources(unittest.TestCase):
    """Scoped release of acquired handles."""

    def test_reverse_order_and_idempotent(self):
        released = []
        scope = GpuResources()
        scope.acquire("a", 1, released.append)
        scope.acquire("b", 2, released.append)
        scope.acquire("c", 3, released.append)
        self.assertEqual(scope.labels, ("a", "b", "c"))

        scope.close()
        scope.close()
        self.assertEqual(released, [3, 2, 1])
        self.assertEqual(len(scope), 0)

    def test_reusable_after_close(self):
        released = []
        with GpuResources() as scope:
            scope.acquire("a", 1, released.append)
            scope.close()
            scope.acquire("b", 2, released.append)
        self.assertEqual(released, [1, 2])


class TestPlanObject(unittest.TestCase):
    """Branch selection and matrices, no GL involved."""

    def setUp(self):
        self.renderer = RenderStateMachine()

    def test_no_marker_skips_object(self):
        self.assertIsNone(self.renderer.plan_object(None, INTRINSICS, (640, 480)))

    def test_marker_behind_camera_skips_object(self):
        self.assertIsNone(self.renderer.plan_object(BEHIND, INTRINSICS, (640, 480)))

    def test_marker_in_front_draws_at_marker(self):
        draw = self.renderer.plan_object(IN_FRONT, INTRINSICS, (640, 480))
        self.assertIsNotNone(draw)

        origin = draw.view @ draw.model @ np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float32)
        np.testing.assert_allclose(origin, [0.0, 0.0, -0.5, 1.0], atol=1e-6)
        np.testing.assert_allclose(draw.eye_position, [0.0, 0.0, -0.5], atol=1e-6)

        clip = draw.projection @ origin
        np.testing.assert_allclose(clip[:2] / clip[3], [0.0, 0.0], atol=1e-6)

    def test_projection_is_cached(self):
        first = self.renderer.projection_for(INTRINSICS, (640, 480))
        second = self.renderer.projection_for(INTRINSICS, (640, 480))
        self.assertIs(first, second)
        self.assertIsNot(first, self.renderer.projection_for(INTRINSICS, (1280, 720)))

    def test_animation_offset_moves_object_along_marker_normal(self):
        animation = AnimationTrigger(duration=1.0, peak_height=0.05)
        renderer = RenderStateMachine(animation=animation)
        animation.trigger(now=0.0)

        draw = renderer.plan_object(FACING, INTRINSICS, (640, 480), now=1.0)
        np.testing.assert_allclose(draw.model[:3, 3], [0.0, 0.0, 0.05], atol=1e-7)

        # Marker normal points at the camera, so the object comes closer
        origin = draw.view @ draw.model @ np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float32)
        np.testing.assert_allclose(origin, [0.0, 0.0, -0.45, 1.0], atol=1e-6)


class TestRenderStateMachine(unittest.TestCase):
    """Lifecycle and per-frame sequence against mocked GL."""

    def setUp(self):
        self.gl = _fake_gl()
        self.glfw = _fake_glfw()
        for name, fake in (("GL", self.gl), ("glfw", self.glfw)):
            patcher = mock.patch.object(renderer_module, name, fake)
            patcher.start()
            self.addCleanup(patcher.stop)

        self.renderer = RenderStateMachine({"resize_background": True})
        self.frame = np.zeros((480, 640, 3), dtype=np.uint8)

    def _draw_calls(self):
        return [c.args for c in self.gl.glDrawArrays.call_args_list]

    def test_initialize_and_shutdown_twice(self):
        self.assertTrue(self.renderer.initialize((640, 480)))
        self.assertTrue(self.renderer.initialized)
        self.glfw.swap_interval.assert_called_once_with(1)

        self.renderer.shutdown()
        self.renderer.shutdown()

        self.assertFalse(self.renderer.initialized)
        self.assertEqual(self.gl.glDeleteProgram.call_count, 2)
        self.assertEqual(self.gl.glDeleteTextures.call_count, 1)
        self.glfw.destroy_window.assert_called_once_with("window")
        self.glfw.terminate.assert_called_once()

    def test_release_order_is_reverse_of_acquisition(self):
        self.renderer.initialize((640, 480))
        order = []
        self.gl.glDeleteTextures.side_effect = lambda *a: order.append("texture")
        self.gl.glDeleteProgram.side_effect = lambda *a: order.append("program")
        self.glfw.destroy_window.side_effect = lambda *a: order.append("window")
        self.glfw.terminate.side_effect = lambda *a: order.append("glfw")

        self.renderer.shutdown()
        self.assertEqual(order, ["texture", "program", "program", "window", "glfw"])

    def test_shader_compile_failure_releases_partial_state(self):
        self.gl.glGetShaderiv.return_value = 0
        self.gl.glGetShaderInfoLog.return_value = b"0:3(1): error: syntax error"

        self.assertFalse(self.renderer.initialize((640, 480)))
        self.assertIsInstance(self.renderer.init_error, ShaderCompileError)
        self.assertIn("syntax error", self.renderer.init_error.log)
        self.glfw.destroy_window.assert_called_once_with("window")
        self.glfw.terminate.assert_called_once()

        self.renderer.shutdown()
        self.glfw.terminate.assert_called_once()

    def test_shader_link_failure(self):
        self.gl.glGetProgramiv.return_value = 0
        self.gl.glGetProgramInfoLog.return_value = b"link error: missing main"

        self.assertFalse(self.renderer.initialize((640, 480)))
        self.assertIsInstance(self.renderer.init_error, ShaderLinkError)
        self.assertEqual(self.renderer.init_error.log, "link error: missing main")
        self.gl.glDeleteProgram.assert_called_once_with(10)

    def test_window_failure(self):
        self.glfw.create_window.return_value = None
        self.assertFalse(self.renderer.initialize((640, 480)))
        self.assertIsInstance(self.renderer.init_error, RuntimeError)
        self.glfw.terminate.assert_called_once()

    def test_render_marker_in_front_draws_background_and_object(self):
        self.renderer.initialize((640, 480))
        self.assertTrue(self.renderer.load_asset(create_cube(50.0)))

        self.assertTrue(self.renderer.render_frame(self.frame, IN_FRONT, INTRINSICS))
        self.assertEqual(
            self._draw_calls(), [(self.gl.GL_TRIANGLES, 0, 6), (self.gl.GL_TRIANGLES, 0, 36)]
        )
        self.assertIsNotNone(self.renderer.last_draw)
        self.assertEqual(self.renderer.frames_rendered, 1)

    def test_render_marker_behind_draws_background_only(self):
        self.renderer.initialize((640, 480))
        self.renderer.load_asset(create_cube(50.0))

        self.assertTrue(self.renderer.render_frame(self.frame, BEHIND, INTRINSICS))
        self.assertEqual(self._draw_calls(), [(self.gl.GL_TRIANGLES, 0, 6)])
        self.assertIsNone(self.renderer.last_draw)

    def test_frame_sequence_order(self):
        self.renderer.initialize((640, 480))
        self.renderer.load_asset(create_cube(50.0))
        self.gl.reset_mock()

        self.renderer.render_frame(self.frame, IN_FRONT, INTRINSICS)
        names = [
            name for name, _, _ in self.gl.mock_calls
            if name in ("glClear", "glTexSubImage2D", "glDrawArrays", "glDisable", "glEnable")
        ]
        self.assertEqual(
            names,
            ["glClear", "glTexSubImage2D", "glDisable", "glDrawArrays", "glEnable", "glClear", "glDrawArrays"],
        )
        clears = [c.args[0] for c in self.gl.glClear.call_args_list]
        self.assertEqual(clears, [0x4000 | 0x0100, 0x0100])

    def test_matrices_uploaded_transposed(self):
        self.renderer.initialize((640, 480))
        self.renderer.load_asset(create_cube(50.0))
        self.renderer.render_frame(self.frame, IN_FRONT, INTRINSICS)

        self.assertEqual(self.gl.glUniformMatrix4fv.call_count, 3)
        for call in self.gl.glUniformMatrix4fv.call_args_list:
            self.assertIs(call.args[2], self.gl.GL_TRUE)

    def test_frame_size_change_resizes_texture(self):
        self.renderer.initialize((640, 480))
        self.gl.glTexImage2D.reset_mock()

        small = np.zeros((240, 320, 3), dtype=np.uint8)
        self.assertTrue(self.renderer.render_frame(small, None, INTRINSICS))
        self.assertEqual(self.gl.glTexImage2D.call_args.args[3:5], (320, 240))

    def test_frame_size_mismatch_skips_frame(self):
        renderer = RenderStateMachine({"resize_background": False})
        renderer.initialize((640, 480))

        small = np.zeros((240, 320, 3), dtype=np.uint8)
        self.assertFalse(renderer.render_frame(small, IN_FRONT, INTRINSICS))
        self.assertEqual(renderer.frames_skipped, 1)
        self.gl.glDrawArrays.assert_not_called()

    def test_invalid_intrinsics_skip_frame(self):
        self.renderer.initialize((640, 480))
        self.renderer.load_asset(create_cube(50.0))
        bad = CameraIntrinsics.from_focal(0.0, 500.0, 320.0, 240.0)

        self.assertFalse(self.renderer.render_frame(self.frame, IN_FRONT, bad))
        self.assertEqual(self.renderer.frames_skipped, 1)

    def test_render_before_initialize(self):
        self.assertFalse(self.renderer.render_frame(self.frame, IN_FRONT, INTRINSICS))

    def test_invalid_mesh_is_rejected(self):
        self.renderer.initialize((640, 480))
        broken = RenderableMesh(vertices=np.zeros(10, dtype=np.float32), vertex_count=3)

        self.assertFalse(self.renderer.load_asset(broken))
        self.assertIsInstance(self.renderer.asset_error, AssetLoadError)
        self.assertFalse(self.renderer.has_asset)

        # Without a mesh only the background is drawn
        self.renderer.render_frame(self.frame, IN_FRONT, INTRINSICS)
        self.assertEqual(self._draw_calls(), [(self.gl.GL_TRIANGLES, 0, 6)])

    def test_second_asset_replaces_first(self):
        self.renderer.initialize((640, 480))
        self.renderer.load_asset(create_cube(50.0))
        deleted_before = self.gl.glDeleteVertexArrays.call_count

        self.renderer.load_asset(create_cube(20.0))
        self.assertEqual(self.gl.glDeleteVertexArrays.call_count, deleted_before + 1)

    def test_repeated_loads_keep_one_mesh_slot(self):
        self.renderer.initialize((640, 480))
        self.renderer.load_asset(create_cube(50.0))
        registered = self.renderer._resources.labels

        for size in (10.0, 20.0, 30.0, 40.0):
            self.assertTrue(self.renderer.load_asset(create_cube(size)))
        self.assertEqual(self.renderer._resources.labels, registered)
        self.assertEqual(registered.count("mesh"), 1)
        self.assertEqual(self.gl.glDeleteVertexArrays.call_count, 4)

        self.renderer.shutdown()
        # four replaced meshes, the last mesh and the background quad
        self.assertEqual(self.gl.glDeleteVertexArrays.call_count, 6)
        self.assertEqual(len(self.renderer._resources), 0)

        self.gl.glCreateProgram.side_effect = [12, 13]
        self.renderer.initialize((640, 480))
        self.renderer.load_asset(create_cube(50.0))
        self.assertEqual(self.renderer._resources.labels.count("mesh"), 1)

    def test_escape_requests_close(self):
        self.renderer.initialize((640, 480))
        self.assertFalse(self.renderer.should_close())

        self.renderer._on_key("window", self.glfw.KEY_ESCAPE, 0, self.glfw.PRESS, 0)
        self.assertTrue(self.renderer.should_close())
        self.glfw.set_window_should_close.assert_called_with("window", True)

    def test_bound_key_runs_handler(self):
        self.renderer.initialize((640, 480))
        handler = mock.Mock()
        self.renderer.bind_key(self.glfw.KEY_SPACE, handler)

        self.renderer._on_key("window", self.glfw.KEY_SPACE, 0, self.glfw.RELEASE, 0)
        handler.assert_not_called()
        self.renderer._on_key("window", self.glfw.KEY_SPACE, 0, self.glfw.PRESS, 0)
        handler.assert_called_once_with()

    def test_context_manager_shuts_down(self):
        with RenderStateMachine() as renderer:
            renderer.initialize((640, 480))
            renderer.present()
        self.glfw.swap_buffers.assert_called_once_with("window")
        self.glfw.terminate.assert_called_once()
        self.assertTrue(renderer.should_close())


if __name__ == "__main__":
    unittest.main()
