"""Interactive window: scroll to zoom toward the cursor, drag to pan, R to reset."""

from __future__ import annotations

from typing import Optional

from deepzoom.color import to_rgb8
from deepzoom.orbit import OrbitWorker
from deepzoom.pipeline import RenderPipeline
from deepzoom.util.logging_setup import get_logger
from deepzoom.viewport import FrameSnapshot, ViewportController


class Viewer:
    def __init__(self, controller: ViewportController, pipeline: RenderPipeline, worker: OrbitWorker):
        self.controller = controller
        self.pipeline = pipeline
        self.worker = worker
        self._logger = get_logger()

    def _request(self) -> Optional[FrameSnapshot]:
        """Snapshot the view; return it if it can be drawn now, else queue its orbit."""
        snapshot = self.controller.frame()
        budget = snapshot.budget
        cached = self.pipeline.orbit
        if cached is not None and cached.serves(snapshot.reference, budget.orbit_length, budget.precision_bits):
            self.worker.cancel()
            return snapshot
        self.worker.submit(snapshot.reference, budget, tag=snapshot)
        return None

    def _draw(self, screen, snapshot: FrameSnapshot) -> None:
        import pygame

        rgb = to_rgb8(self.pipeline.render(snapshot, self.pipeline.orbit))
        surface = pygame.surfarray.make_surface(rgb.swapaxes(0, 1))
        screen.blit(surface, (0, 0))
        pygame.display.flip()

    def run(self) -> None:
        import pygame

        pygame.init()
        screen = pygame.display.set_mode((self.controller.width, self.controller.height), pygame.RESIZABLE)
        pygame.display.set_caption("deepzoom")
        clock = pygame.time.Clock()
        self._logger.info("Controls: scroll = zoom, drag = pan, R = reset, Esc = quit")

        dirty = True
        running = True
        try:
            while running:
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        running = False
                    elif event.type == pygame.KEYDOWN:
                        if event.key == pygame.K_ESCAPE:
                            running = False
                        elif event.key == pygame.K_r:
                            self.controller.reset()
                            dirty = True
                    elif event.type == pygame.MOUSEWHEEL:
                        self.controller.zoom_at(event.y, pygame.mouse.get_pos())
                        dirty = True
                    elif event.type == pygame.MOUSEMOTION and event.buttons[0]:
                        self.controller.pan(*event.rel)
                        dirty = True
                    elif event.type == pygame.VIDEORESIZE:
                        self.controller.resize(event.w, event.h)
                        screen = pygame.display.set_mode((event.w, event.h), pygame.RESIZABLE)
                        dirty = True

                if dirty:
                    dirty = False
                    snapshot = self._request()
                    if snapshot is not None:
                        self._draw(screen, snapshot)

                ready = self.worker.poll()
                if ready is not None:
                    _, snapshot, orbit = ready
                    self.pipeline.adopt(orbit)
                    self._draw(screen, snapshot)

                clock.tick(60)
        finally:
            self.worker.close()
            pygame.quit()
