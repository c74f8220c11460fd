"""
OpenGL render state machine for the AR overlay.

Owns the GLFW window, the shader programs, the background quad and texture
and the uploaded mesh. Every frame runs the same fixed sequence:

1. clear colour and depth
2. upload the video frame into the background texture
3. draw the full-viewport background quad with depth testing disabled
4. clear depth only, so the background stays under the object
5. draw the mesh with Phong lighting if the marker is visible and in front
   of the camera

The object draw is decided from scratch every frame; nothing about previous
frames is remembered except the animation state.
"""

from __future__ import annotations

import ctypes
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import glfw
import numpy as np
from OpenGL import GL

from .animation import AnimationTrigger
from .errors import (
    AssetLoadError,
    FrameSizeMismatch,
    InvalidIntrinsics,
    ShaderCompileError,
    ShaderLinkError,
)
from .gl_resources import GpuResources
from .mesh import FLOATS_PER_VERTEX, RenderableMesh
from .transforms import camera_pose, model_matrix, projection_matrix, view_matrix

LOGGER = logging.getLogger(__name__)


# =============================================================================
# Embedded Shaders
# =============================================================================

OBJECT_VERTEX_SHADER = """
#version 330 core
layout (location = 0) in vec3 aPos;
layout (location = 1) in vec3 aNormal;

out vec3 FragPos;
out vec3 Normal;

uniform mat4 model;
uniform mat4 view;
uniform mat4 projection;

void main() {
    FragPos = vec3(model * vec4(aPos, 1.0));
    Normal = mat3(transpose(inverse(model))) * aNormal;
    gl_Position = projection * view * vec4(FragPos, 1.0);
}
"""

OBJECT_FRAGMENT_SHADER = """
#version 330 core
out vec4 FragColor;

in vec3 FragPos;
in vec3 Normal;

uniform vec3 objectColor;
uniform vec3 lightColor;
uniform vec3 lightPos;
uniform vec3 viewPos;
uniform float ambientStrength;
uniform float specularStrength;
uniform float shininess;

void main() {
    vec3 ambient = ambientStrength * lightColor;

    vec3 norm = normalize(Normal);
    vec3 lightDir = normalize(lightPos - FragPos);
    float diff = max(dot(norm, lightDir), 0.0);
    vec3 diffuse = diff * lightColor;

    vec3 viewDir = normalize(viewPos - FragPos);
    vec3 reflectDir = reflect(-lightDir, norm);
    float spec = pow(max(dot(viewDir, reflectDir), 0.0), shininess);
    vec3 specular = specularStrength * spec * lightColor;

    FragColor = vec4((ambient + diffuse + specular) * objectColor, 1.0);
}
"""

BACKGROUND_VERTEX_SHADER = """
#version 330 core
layout (location = 0) in vec2 aPos;
layout (location = 1) in vec2 aTexCoord;
out vec2 TexCoord;
void main() {
    gl_Position = vec4(aPos, 0.0, 1.0);
    TexCoord = aTexCoord;
}
"""

BACKGROUND_FRAGMENT_SHADER = """
#version 330 core
out vec4 FragColor;
in vec2 TexCoord;
uniform sampler2D backgroundTexture;
void main() {
    FragColor = texture(backgroundTexture, TexCoord);
}
"""

OBJECT_UNIFORMS = (
    "model", "view", "projection", "objectColor", "lightColor", "lightPos",
    "viewPos", "ambientStrength", "specularStrength", "shininess",
)

# Full-viewport quad: position (2) + texcoord (2). Texture row 0 is the top
# image row as delivered by OpenCV, so t runs downwards.
BACKGROUND_QUAD = np.array([
    -1.0, -1.0, 0.0, 1.0,
     1.0, -1.0, 1.0, 1.0,
     1.0,  1.0, 1.0, 0.0,
    -1.0, -1.0, 0.0, 1.0,
     1.0,  1.0, 1.0, 0.0,
    -1.0,  1.0, 0.0, 0.0,
], dtype=np.float32)


@dataclass
class RenderSettings:
    """Fixed rendering parameters for a session."""

    title: str = "MARKERSIGHT"
    near: float = 0.1
    far: float = 100.0
    clear_color: Tuple[float, float, float, float] = (0.1, 0.1, 0.1, 1.0)
    model_scale: float = 0.001  # asset units (mm) -> meters
    base_rotation: Tuple[float, float, float] = (90.0, 0.0, 0.0)  # degrees, stands Y-up assets on the marker
    light_position: Tuple[float, float, float] = (0.5, 0.5, 0.5)  # marker space, meters
    light_color: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    ambient_strength: float = 0.2
    specular_strength: float = 0.8
    shininess: float = 32.0
    resize_background: bool = True
    vsync: bool = True
    gl_version: Tuple[int, int] = (3, 3)

    @staticmethod
    def from_config(cfg: Optional[Dict]) -> "RenderSettings":
        cfg = cfg or {}
        defaults = RenderSettings()
        return RenderSettings(
            title=cfg.get("window_title", defaults.title),
            near=float(cfg.get("near", defaults.near)),
            far=float(cfg.get("far", defaults.far)),
            clear_color=tuple(cfg.get("clear_color", defaults.clear_color)),
            model_scale=float(cfg.get("model_scale", defaults.model_scale)),
            base_rotation=tuple(cfg.get("base_rotation", defaults.base_rotation)),
            light_position=tuple(cfg.get("light_position", defaults.light_position)),
            light_color=tuple(cfg.get("light_color", defaults.light_color)),
            ambient_strength=float(cfg.get("ambient_strength", defaults.ambient_strength)),
            specular_strength=float(cfg.get("specular_strength", defaults.specular_strength)),
            shininess=float(cfg.get("shininess", defaults.shininess)),
            resize_background=bool(cfg.get("resize_background", defaults.resize_background)),
            vsync=bool(cfg.get("vsync", defaults.vsync)),
            gl_version=tuple(cfg.get("gl_version", defaults.gl_version)),
        )


@dataclass
class ObjectDraw:
    """Matrices for one object draw (row-major, float32)."""

    model: np.ndarray
    view: np.ndarray
    projection: np.ndarray
    eye_position: np.ndarray


@dataclass
class _MeshBuffers:
    resources: GpuResources
    vao: int
    vertex_count: int
    diffuse_color: Tuple[float, float, float]
    name: str


def _info_log(raw) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace").strip()
    return str(raw).strip()


class RenderStateMachine:
    """
    Single owner of every GL resource used by the AR overlay.

    Typical use::

        renderer = RenderStateMachine(config["render"], animation)
        if renderer.initialize((640, 480)):
            renderer.load_asset(create_cube(50.0))
            while not renderer.should_close():
                renderer.render_frame(frame, pose, intrinsics)
                renderer.present()
        renderer.shutdown()
    """

    def __init__(self, config: Optional[Dict] = None, animation: Optional[AnimationTrigger] = None):
        self.settings = RenderSettings.from_config(config)
        self.animation = animation
        self.window = None
        self.initialized = False
        self.init_error: Optional[Exception] = None
        self.asset_error: Optional[AssetLoadError] = None
        self.last_draw: Optional[ObjectDraw] = None
        self.frames_rendered = 0
        self.frames_skipped = 0

        self._resources = GpuResources()
        self._object_program = None
        self._background_program = None
        self._uniforms: Dict[str, int] = {}
        self._background_sampler = -1
        self._background_vao = None
        self._background_texture = None
        self._texture_size: Optional[Tuple[int, int]] = None
        self._mesh: Optional[_MeshBuffers] = None
        self._mesh_slot = False
        self._projection_cache: Dict[Tuple, np.ndarray] = {}
        self._close_requested = False
        self._key_handlers: Dict[int, Callable[[], None]] = {}

    def __enter__(self) -> "RenderStateMachine":
        return self

    def __exit__(self, *exc_info):
        self.shutdown()
        return False

    @property
    def has_asset(self) -> bool:
        return self._mesh is not None

    # ------------------------------------------------------------------ #
    # Initialization
    # ------------------------------------------------------------------ #
    def initialize(self, viewport: Tuple[int, int]) -> bool:
        """Create the window, programs, background quad and texture.

        Returns:
            bool: True on success. On failure the cause is kept in
            ``init_error`` and everything acquired so far is released.
        """
        if self.initialized:
            return True

        width, height = int(viewport[0]), int(viewport[1])
        self.init_error = None
        try:
            if width <= 0 or height <= 0:
                raise InvalidIntrinsics(f"Viewport must be positive (w={width}, h={height})")

            self._create_window(width, height)
            self._object_program = self._build_program(
                "object", OBJECT_VERTEX_SHADER, OBJECT_FRAGMENT_SHADER
            )
            self._background_program = self._build_program(
                "background", BACKGROUND_VERTEX_SHADER, BACKGROUND_FRAGMENT_SHADER
            )
            self._uniforms = {
                name: GL.glGetUniformLocation(self._object_program, name) for name in OBJECT_UNIFORMS
            }
            self._background_sampler = GL.glGetUniformLocation(
                self._background_program, "backgroundTexture"
            )
            self._create_background(width, height)
            GL.glEnable(GL.GL_DEPTH_TEST)
            GL.glDepthFunc(GL.GL_LESS)
        except Exception as e:
            LOGGER.error("Renderer initialization failed: %s", e)
            self.init_error = e
            self.shutdown()
            return False

        self.initialized = True
        self._close_requested = False
        LOGGER.info("Renderer initialized: %dx%d", width, height)
        return True

    def _create_window(self, width: int, height: int):
        if not glfw.init():
            raise RuntimeError("Failed to initialize GLFW")
        self._resources.acquire("glfw", None, lambda _: glfw.terminate())

        major, minor = self.settings.gl_version
        glfw.window_hint(glfw.CONTEXT_VERSION_MAJOR, major)
        glfw.window_hint(glfw.CONTEXT_VERSION_MINOR, minor)
        glfw.window_hint(glfw.OPENGL_PROFILE, glfw.OPENGL_CORE_PROFILE)
        glfw.window_hint(glfw.OPENGL_FORWARD_COMPAT, GL.GL_TRUE)

        window = glfw.create_window(width, height, self.settings.title, None, None)
        if not window:
            raise RuntimeError("Failed to create GLFW window")
        self.window = self._resources.acquire("window", window, self._destroy_window)

        glfw.make_context_current(window)
        glfw.swap_interval(1 if self.settings.vsync else 0)
        glfw.set_key_callback(window, self._on_key)
        glfw.set_framebuffer_size_callback(window, self._on_framebuffer_size)

        fb_width, fb_height = glfw.get_framebuffer_size(window)
        GL.glViewport(0, 0, fb_width, fb_height)

    def _destroy_window(self, window):
        glfw.destroy_window(window)
        self.window = None

    def _compile_shader(self, shader_type, source: str, name: str):
        shader = GL.glCreateShader(shader_type)
        GL.glShaderSource(shader, source)
        GL.glCompileShader(shader)
        if not GL.glGetShaderiv(shader, GL.GL_COMPILE_STATUS):
            log = _info_log(GL.glGetShaderInfoLog(shader))
            GL.glDeleteShader(shader)
            stage = "vertex" if shader_type == GL.GL_VERTEX_SHADER else "fragment"
            raise ShaderCompileError(f"{name} {stage} shader failed to compile", log)
        return shader

    def _build_program(self, name: str, vertex_source: str, fragment_source: str):
        vertex = self._compile_shader(GL.GL_VERTEX_SHADER, vertex_source, name)
        try:
            fragment = self._compile_shader(GL.GL_FRAGMENT_SHADER, fragment_source, name)
        except ShaderCompileError:
            GL.glDeleteShader(vertex)
            raise

        program = GL.glCreateProgram()
        GL.glAttachShader(program, vertex)
        GL.glAttachShader(program, fragment)
        GL.glLinkProgram(program)
        GL.glDeleteShader(vertex)
        GL.glDeleteShader(fragment)

        if not GL.glGetProgramiv(program, GL.GL_LINK_STATUS):
            log = _info_log(GL.glGetProgramInfoLog(program))
            GL.glDeleteProgram(program)
            raise ShaderLinkError(f"{name} program failed to link", log)

        return self._resources.acquire(f"{name} program", program, GL.glDeleteProgram)

    def _create_background(self, width: int, height: int):
        self._background_vao = self._resources.acquire(
            "background vao", GL.glGenVertexArrays(1), lambda h: GL.glDeleteVertexArrays(1, [h])
        )
        vbo = self._resources.acquire(
            "background vbo", GL.glGenBuffers(1), lambda h: GL.glDeleteBuffers(1, [h])
        )

        GL.glBindVertexArray(self._background_vao)
        GL.glBindBuffer(GL.GL_ARRAY_BUFFER, vbo)
        GL.glBufferData(GL.GL_ARRAY_BUFFER, BACKGROUND_QUAD.nbytes, BACKGROUND_QUAD, GL.GL_STATIC_DRAW)
        GL.glEnableVertexAttribArray(0)
        GL.glVertexAttribPointer(0, 2, GL.GL_FLOAT, GL.GL_FALSE, 16, ctypes.c_void_p(0))
        GL.glEnableVertexAttribArray(1)
        GL.glVertexAttribPointer(1, 2, GL.GL_FLOAT, GL.GL_FALSE, 16, ctypes.c_void_p(8))
        GL.glBindVertexArray(0)

        self._background_texture = self._resources.acquire(
            "background texture", GL.glGenTextures(1), lambda h: GL.glDeleteTextures(1, [h])
        )
        GL.glBindTexture(GL.GL_TEXTURE_2D, self._background_texture)
        GL.glTexParameteri(GL.GL_TEXTURE_2D, GL.GL_TEXTURE_MIN_FILTER, GL.GL_LINEAR)
        GL.glTexParameteri(GL.GL_TEXTURE_2D, GL.GL_TEXTURE_MAG_FILTER, GL.GL_LINEAR)
        GL.glTexParameteri(GL.GL_TEXTURE_2D, GL.GL_TEXTURE_WRAP_S, GL.GL_CLAMP_TO_EDGE)
        GL.glTexParameteri(GL.GL_TEXTURE_2D, GL.GL_TEXTURE_WRAP_T, GL.GL_CLAMP_TO_EDGE)
        # BGR rows are not 4-byte aligned for arbitrary widths
        GL.glPixelStorei(GL.GL_UNPACK_ALIGNMENT, 1)
        self._allocate_texture(width, height, None)
        GL.glBindTexture(GL.GL_TEXTURE_2D, 0)

    def _allocate_texture(self, width: int, height: int, pixels):
        GL.glTexImage2D(
            GL.GL_TEXTURE_2D, 0, GL.GL_RGB, width, height, 0, GL.GL_BGR, GL.GL_UNSIGNED_BYTE, pixels
        )
        self._texture_size = (width, height)

    # ------------------------------------------------------------------ #
    # Assets
    # ------------------------------------------------------------------ #
    def load_asset(self, mesh: RenderableMesh) -> bool:
        """Upload a mesh, replacing any previously loaded one.

        Failure is not fatal: the renderer keeps running without an object.
        """
        self.asset_error = None
        if not self.initialized:
            self.asset_error = AssetLoadError("Renderer is not initialized")
            LOGGER.error("Cannot load asset: %s", self.asset_error)
            return False

        scope = GpuResources()
        try:
            mesh.validate()
            data = np.ascontiguousarray(mesh.vertices, dtype=np.float32)
            stride = FLOATS_PER_VERTEX * 4

            vao = scope.acquire("mesh vao", GL.glGenVertexArrays(1), lambda h: GL.glDeleteVertexArrays(1, [h]))
            vbo = scope.acquire("mesh vbo", GL.glGenBuffers(1), lambda h: GL.glDeleteBuffers(1, [h]))
            GL.glBindVertexArray(vao)
            GL.glBindBuffer(GL.GL_ARRAY_BUFFER, vbo)
            GL.glBufferData(GL.GL_ARRAY_BUFFER, data.nbytes, data, GL.GL_STATIC_DRAW)
            GL.glVertexAttribPointer(0, 3, GL.GL_FLOAT, GL.GL_FALSE, stride, ctypes.c_void_p(0))
            GL.glEnableVertexAttribArray(0)
            GL.glVertexAttribPointer(1, 3, GL.GL_FLOAT, GL.GL_FALSE, stride, ctypes.c_void_p(12))
            GL.glEnableVertexAttribArray(1)
            GL.glBindVertexArray(0)
        except Exception as e:
            scope.close()
            self.asset_error = e if isinstance(e, AssetLoadError) else AssetLoadError(str(e))
            LOGGER.error("Asset load failed: %s", self.asset_error)
            return False

        self._release_mesh()
        self._mesh = _MeshBuffers(
            resources=scope,
            vao=vao,
            vertex_count=mesh.vertex_count,
            diffuse_color=tuple(mesh.diffuse_color),
            name=mesh.name,
        )
        # One slot for whichever mesh is current, released before the programs and window
        if not self._mesh_slot:
            self._resources.acquire("mesh", self, lambda renderer: renderer._release_mesh())
            self._mesh_slot = True
        LOGGER.info("Asset uploaded: %s (%d vertices)", mesh.name or "<unnamed>", mesh.vertex_count)
        return True

    def _release_mesh(self):
        if self._mesh is not None:
            self._mesh.resources.close()
            self._mesh = None

    # ------------------------------------------------------------------ #
    # Per-frame
    # ------------------------------------------------------------------ #
    def projection_for(self, intrinsics, viewport: Tuple[int, int]) -> np.ndarray:
        """Projection matrix for the intrinsics and viewport, cached."""
        key = (
            intrinsics.fx, intrinsics.fy, intrinsics.cx, intrinsics.cy,
            int(viewport[0]), int(viewport[1]), self.settings.near, self.settings.far,
        )
        projection = self._projection_cache.get(key)
        if projection is None:
            projection = projection_matrix(*key)
            self._projection_cache[key] = projection
        return projection

    def plan_object(self, pose, intrinsics, viewport: Tuple[int, int], now: Optional[float] = None) -> Optional[ObjectDraw]:
        """Decide whether the object is drawn this frame and with which matrices.

        Returns None when no marker was detected or the marker is behind the
        camera.
        """
        if pose is None or not pose.is_in_front:
            return None

        projection = self.projection_for(intrinsics, viewport)
        view = view_matrix(pose.rotation_vector, pose.translation_vector)
        offset = self.animation.current_offset(now) if self.animation is not None else None
        model = model_matrix(self.settings.model_scale, self.settings.base_rotation, offset)
        eye = camera_pose(pose.rotation_vector, pose.translation_vector)[:3, 3]
        return ObjectDraw(model=model, view=view, projection=projection, eye_position=eye)

    def _check_frame(self, frame) -> Tuple[int, int]:
        if frame is None or not isinstance(frame, np.ndarray):
            raise ValueError("No frame to render")
        if frame.ndim != 3 or frame.shape[2] != 3 or frame.dtype != np.uint8:
            raise ValueError(f"Expected an 8-bit BGR frame, got {frame.dtype} {frame.shape}")

        size = (frame.shape[1], frame.shape[0])
        if size != self._texture_size and not self.settings.resize_background:
            raise FrameSizeMismatch(self._texture_size, size)
        return size

    def render_frame(self, frame: np.ndarray, pose, intrinsics, now: Optional[float] = None) -> bool:
        """Draw one frame. Errors are logged and the frame is skipped.

        Returns:
            bool: True if the frame was drawn
        """
        if not self.initialized:
            LOGGER.warning("render_frame called before initialize")
            return False

        try:
            size = self._check_frame(frame)

            GL.glClearColor(*self.settings.clear_color)
            GL.glClear(GL.GL_COLOR_BUFFER_BIT | GL.GL_DEPTH_BUFFER_BIT)

            self._upload_background(frame, size)
            self._draw_background()

            GL.glClear(GL.GL_DEPTH_BUFFER_BIT)

            draw = self.plan_object(pose, intrinsics, size, now)
            if draw is not None and self._mesh is not None:
                self._draw_object(draw)
            self.last_draw = draw
        except Exception as e:
            self.frames_skipped += 1
            LOGGER.warning("Skipping frame: %s", e)
            return False

        self.frames_rendered += 1
        return True

    def _upload_background(self, frame: np.ndarray, size: Tuple[int, int]):
        pixels = np.ascontiguousarray(frame)
        GL.glBindTexture(GL.GL_TEXTURE_2D, self._background_texture)
        if size != self._texture_size:
            LOGGER.info(
                "Resizing background texture %s -> %dx%d", self._texture_size, size[0], size[1]
            )
            self._allocate_texture(size[0], size[1], pixels)
        else:
            GL.glTexSubImage2D(
                GL.GL_TEXTURE_2D, 0, 0, 0, size[0], size[1], GL.GL_BGR, GL.GL_UNSIGNED_BYTE, pixels
            )

    def _draw_background(self):
        GL.glDisable(GL.GL_DEPTH_TEST)
        GL.glUseProgram(self._background_program)
        GL.glActiveTexture(GL.GL_TEXTURE0)
        GL.glBindTexture(GL.GL_TEXTURE_2D, self._background_texture)
        GL.glUniform1i(self._background_sampler, 0)
        GL.glBindVertexArray(self._background_vao)
        GL.glDrawArrays(GL.GL_TRIANGLES, 0, 6)
        GL.glBindVertexArray(0)
        GL.glEnable(GL.GL_DEPTH_TEST)

    def _draw_object(self, draw: ObjectDraw):
        u = self._uniforms
        s = self.settings
        GL.glUseProgram(self._object_program)
        GL.glUniformMatrix4fv(u["model"], 1, GL.GL_TRUE, draw.model)
        GL.glUniformMatrix4fv(u["view"], 1, GL.GL_TRUE, draw.view)
        GL.glUniformMatrix4fv(u["projection"], 1, GL.GL_TRUE, draw.projection)
        GL.glUniform3f(u["objectColor"], *self._mesh.diffuse_color)
        GL.glUniform3f(u["lightColor"], *s.light_color)
        GL.glUniform3f(u["lightPos"], *s.light_position)
        GL.glUniform3f(u["viewPos"], *(float(v) for v in draw.eye_position))
        GL.glUniform1f(u["ambientStrength"], s.ambient_strength)
        GL.glUniform1f(u["specularStrength"], s.specular_strength)
        GL.glUniform1f(u["shininess"], s.shininess)

        GL.glBindVertexArray(self._mesh.vao)
        GL.glDrawArrays(GL.GL_TRIANGLES, 0, self._mesh.vertex_count)
        GL.glBindVertexArray(0)

    # ------------------------------------------------------------------ #
    # Window surface
    # ------------------------------------------------------------------ #
    def bind_key(self, key: int, handler: Callable[[], None]):
        """Call ``handler`` when ``key`` (a ``glfw.KEY_*`` code) is pressed."""
        self._key_handlers[key] = handler

    def _on_key(self, window, key, scancode, action, mods):
        if action != glfw.PRESS:
            return
        if key in (glfw.KEY_ESCAPE, glfw.KEY_Q):
            LOGGER.info("User requested exit")
            self.request_close()
            return
        handler = self._key_handlers.get(key)
        if handler is not None:
            handler()

    def _on_framebuffer_size(self, window, width, height):
        GL.glViewport(0, 0, width, height)

    def request_close(self):
        self._close_requested = True
        if self.window is not None:
            glfw.set_window_should_close(self.window, True)

    def should_close(self) -> bool:
        if self.window is None or self._close_requested:
            return True
        return bool(glfw.window_should_close(self.window))

    def present(self):
        """Swap buffers and process window events."""
        if self.window is None:
            return
        glfw.swap_buffers(self.window)
        glfw.poll_events()

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #
    def shutdown(self):
        """Release GPU resources and the window in reverse acquisition order.

        Idempotent; safe after a partial or failed initialization.
        """
        had_resources = len(self._resources) > 0
        try:
            self._resources.close()
        except Exception as e:
            LOGGER.error("Error while releasing GPU resources: %s", e)

        self._mesh = None
        self._mesh_slot = False
        self._object_program = None
        self._background_program = None
        self._background_vao = None
        self._background_texture = None
        self._texture_size = None
        self._projection_cache.clear()
        self.window = None
        self.initialized = False
        if had_resources:
            LOGGER.info("Renderer shut down")
