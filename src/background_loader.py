"""
Background Image Loader

Builds reference image pyramids in a background thread so registering a
large marker does not stall the frame loop.

- Owner thread submits descriptors (returns a Future immediately)
- Worker thread validates and builds the full pyramid
- The finished entry is handed to the publish callback; nothing becomes
  visible to readers before its pyramid is complete
"""

import threading
import queue
import logging
from concurrent.futures import Future
from typing import Callable, Optional

from reference_store import ReferenceImage, ReferenceImageDescriptor, create_reference_image


class BackgroundImageLoader:
    """
    Single worker thread turning descriptors into published reference images.

    The Future of each submission resolves to the published ReferenceImage,
    to None when the publish callback refused it (e.g. capacity reached) or
    the loader shut down before publishing, or to the validation error.
    """

    def __init__(self, publish: Callable[[ReferenceImage], bool],
                 build: Callable[[ReferenceImageDescriptor], ReferenceImage] = create_reference_image,
                 max_pending: int = 0, lock=None):
        """
        Args:
            publish: Inserts a built image, returns False to refuse it
            build: Descriptor -> ReferenceImage (validation + pyramid)
            max_pending: Queue bound, 0 for unbounded
            lock: Held around the shutdown check and publish; share the
                owner's lock so its teardown cannot interleave with a publish
        """
        self.publish = publish
        self.build = build
        self.lock = lock if lock is not None else threading.RLock()
        self.input_queue = queue.Queue(maxsize=max_pending)
        self.running = True
        self.thread = threading.Thread(target=self._worker, daemon=True)
        self.thread.start()
        logging.info("BackgroundImageLoader started")

    def _worker(self):
        """Background worker thread that builds pyramids."""
        while self.running:
            try:
                work_item = self.input_queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if work_item is None:
                break  # Shutdown signal

            descriptor, future = work_item
            if not future.set_running_or_notify_cancel():
                continue

            try:
                image = self.build(descriptor)
            except Exception as e:
                logging.error(f"Reference image build failed for {descriptor.id}: {e}")
                future.set_exception(e)
                continue

            # running check and publish are atomic with respect to the owner's clear
            with self.lock:
                if not self.running:
                    logging.info(f"Discarding reference image built after shutdown: {descriptor.id}")
                    future.set_result(None)
                    continue
                try:
                    published = self.publish(image)
                except Exception as e:
                    logging.error(f"Publishing reference image {descriptor.id} failed: {e}")
                    future.set_exception(e)
                    continue
            future.set_result(image if published else None)

        logging.info("BackgroundImageLoader stopped")

    def submit(self, descriptor: ReferenceImageDescriptor) -> Future:
        """
        Queue a descriptor for building.

        Raises:
            RuntimeError: if the loader has been shut down
        """
        if not self.running:
            raise RuntimeError("BackgroundImageLoader is shut down")
        future = Future()
        self.input_queue.put((descriptor, future))
        return future

    def pending_count(self) -> int:
        return self.input_queue.qsize()

    def shutdown(self, timeout: Optional[float] = 2.0):
        """Stop the worker and cancel work that has not started."""
        if not self.running:
            return
        self.running = False
        while True:
            try:
                work_item = self.input_queue.get_nowait()
            except queue.Empty:
                break
            if work_item is not None:
                work_item[1].cancel()
        try:
            self.input_queue.put_nowait(None)
        except queue.Full:
            pass
        self.thread.join(timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
