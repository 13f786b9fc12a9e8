from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
import threading

import taichi as ti


class NullExecutor:
  """ Runs submitted work immediately on the calling thread """

  def __init__(self, initializer, **kwargs):
    initializer()
    self._threads = []

  def submit(self, fn, *args, **kwargs) -> Future:
    future = Future()
    future.set_result(fn(*args, **kwargs))
    return future

  def shutdown(self, wait=True):
    pass


class TaichiQueue():
  """ The taichi runtime is accessed from one thread only: init, kernel launches and
  ti.sync are all submitted to a single worker. Use TaichiQueue.init() in place of ti.init(),
  with threaded=False (default) work runs inline on the caller's thread.
  """
  executor: ThreadPoolExecutor | NullExecutor | None = None

  @classmethod
  def init(cls, *args, threaded:bool=False, **kwargs):
    if cls.executor is None:
      make_executor = ThreadPoolExecutor if threaded else NullExecutor
      cls.executor = make_executor(max_workers=1, thread_name_prefix="taichi",
                                   initializer=partial(ti.init, *args, **kwargs))
    return cls.executor

  @classmethod
  def initialized(cls) -> bool:
    return cls.executor is not None

  @classmethod
  def queue(cls):
    if cls.executor is None:
      raise RuntimeError("TaichiQueue not initialized, call TaichiQueue.init() in place of ti.init()")
    return cls.executor

  @classmethod
  def worker_thread(cls):
    threads = list(cls.queue()._threads)
    return threads[0].ident if len(threads) > 0 else None

  @staticmethod
  def _resolve_and_run(func, *args, **kwargs):
    # arguments may be results of earlier queued work
    args = [arg.result() if isinstance(arg, Future) else arg for arg in args]
    return func(*args, **kwargs)

  @classmethod
  def run_async(cls, func, *args, **kwargs) -> Future:
    return cls.queue().submit(cls._resolve_and_run, func, *args, **kwargs)

  @classmethod
  def run_sync(cls, func, *args, **kwargs):
    assert threading.get_ident() != cls.worker_thread(), "run_sync() from the taichi worker thread would deadlock"
    return cls.run_async(func, *args, **kwargs).result()
