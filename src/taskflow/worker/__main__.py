from taskflow.worker.main import run

run()
