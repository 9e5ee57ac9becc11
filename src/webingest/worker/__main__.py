from webingest.worker.main import run

run()
