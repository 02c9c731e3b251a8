from gptuessr import create_app, socketio
from gptuessr.services.lobbies.janitor import start_janitor

app = create_app()

if __name__ == '__main__':
    # Only the serving process schedules the daily sweep
    start_janitor(app)
    socketio.run(app, debug=True, use_reloader=False)
