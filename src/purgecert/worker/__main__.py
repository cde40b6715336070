from purgecert.worker.main import run

run()
