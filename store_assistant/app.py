import os
import logging
import asyncio
from typing import Optional
from flask import Flask, request, jsonify, current_app
from flask_cors import CORS
from openai import AsyncOpenAI

from store_assistant.config import load_settings
from store_assistant.errors import InvalidTurnRequest
from store_assistant.workflow.agent_workflow import AgentWorkflow

# Logging Setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_workflow() -> Optional[AgentWorkflow]:
    """Initialize services from the environment. Returns None when they cannot be started."""
    try:
        logger.info("Initializing services...")
        settings = load_settings()

        if settings.openai_api_key:
            openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
            logger.info("OpenAI client initialized.")
        else:
            logger.error("Workflow NOT initialized due to missing OpenAI API key.")
            return None

        logger.info("Initializing AgentWorkflow...")
        workflow = AgentWorkflow(openai_client=openai_client, settings=settings)
        if workflow.workflow is None:
            return None
        logger.info("Workflow initialized successfully.")
        return workflow

    except Exception as e:
        logger.exception(f"FATAL: Failed to initialize services during startup: {e}")
        return None


def create_app(workflow: Optional[AgentWorkflow] = None, initialize: bool = True) -> Flask:
    app = Flask(__name__)
    CORS(app)
    app.workflow = workflow if workflow is not None or not initialize else build_workflow()

    @app.route('/api/ask', methods=['POST'])
    def ask():
        if not current_app.workflow:
            logger.error("Ask request received but workflow is not initialized.")
            return jsonify({'error': 'Service not initialized correctly'}), 503

        data = request.get_json(silent=True) or {}
        logger.info(f"Received question: '{data.get('user_text') or data.get('question')}' "
                    f"(conversation {data.get('conversation_id')}, store {data.get('store_id')})")

        try:
            answer = asyncio.run(current_app.workflow.process_turn(data))
            logger.info(f"Generated answer: '{answer.get('summary', '')[:100]}...'")
            return jsonify(answer)

        except InvalidTurnRequest as e:
            logger.warning(f"Rejected turn request: {e}")
            return jsonify({'error': str(e)}), 400
        except Exception as e:
            logger.exception(f"Error processing question: {str(e)}")
            return jsonify({'error': 'Failed to process question due to an internal error'}), 500

    # Health check endpoint
    @app.route('/api/health', methods=['GET'])
    def health_check():
        status = 'ok' if current_app.workflow is not None else 'error'
        message = 'Service initialized' if status == 'ok' else 'Service initialization failed'
        status_code = 200 if status == 'ok' else 503
        return jsonify({'status': status, 'message': message}), status_code

    return app


if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False').lower() == 'true')
